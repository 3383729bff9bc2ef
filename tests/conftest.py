import asyncio
import gzip
import inspect
from datetime import datetime, timezone

import httpx
import pytest

from tvcatalog.services.catalog_cache_service import reset_catalog_cache


BBC_PLAYLIST = (
    "#EXTM3U\n"
    '#EXTINF:-1 tvg-id="bbc1" group-title="News",BBC One\n'
    "http://x/stream1\n"
)

BBC_GUIDE = b"""<?xml version="1.0" encoding="UTF-8"?>
<tv>
  <channel id="bbc1"><display-name>BBC One</display-name></channel>
  <programme channel="bbc1" start="20240101120000 +0000" stop="20240101130000 +0000">
    <title>News</title>
    <desc>The latest headlines</desc>
  </programme>
  <programme channel="bbc1" start="20240101130000 +0000" stop="20240101140000 +0000">
    <title>Weather</title>
  </programme>
</tv>
"""


class FakeClock:
    """Monotonic clock stand-in that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class ChunkedStream(httpx.AsyncByteStream):
    """Async body that yields fixed-size chunks, like a real socket read."""

    def __init__(self, data: bytes, chunk_size: int = 4096, delay: float = 0.0):
        self._data = data
        self._chunk_size = chunk_size
        self._delay = delay

    async def __aiter__(self):
        for offset in range(0, len(self._data), self._chunk_size):
            if self._delay:
                await asyncio.sleep(self._delay)
            yield self._data[offset:offset + self._chunk_size]


def streamed(data: bytes, status: int = 200, headers: dict | None = None, **kwargs) -> httpx.Response:
    return httpx.Response(status, headers=headers or {}, stream=ChunkedStream(data, **kwargs))


def mock_client(routes: dict, calls: list | None = None) -> httpx.AsyncClient:
    """
    AsyncClient answering from a {(method, url): factory} table.

    A factory takes the request and returns a Response (or an awaitable of
    one). Unknown routes answer 404. Every request is appended to `calls`.
    """

    async def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append((request.method, str(request.url)))
        factory = routes.get((request.method, str(request.url)))
        if factory is None:
            return httpx.Response(404)
        result = factory(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


def gzip_bytes(data: bytes) -> bytes:
    return gzip.compress(data)


@pytest.fixture(autouse=True)
def _reset_cache():
    reset_catalog_cache()
    yield
    reset_catalog_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
