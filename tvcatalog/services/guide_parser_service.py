"""
Guide Parser Service

Downloads an XMLTV guide, decompresses it on the fly when it is gzipped and
builds the programme index. Every failure path returns None; a guide is
either parsed completely or not at all.
"""
from __future__ import annotations

import asyncio
import logging
import zlib
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from lxml import etree  # type: ignore

from tvcatalog.config import MEGABYTE, settings
from tvcatalog.services.catalog_types import GuideIndex, GuideSnapshot, ProgrammeEntry
from tvcatalog.services.programme_lookup_service import normalize_channel_key
from tvcatalog.utils.http_fetch import declared_length, default_headers
from tvcatalog.utils.timezone import DateFormatError, parse_xmltv_time, utc_now
from tvcatalog.utils.url_normalizer import normalize_guide_url, sanitize_url_for_logging


logger = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"
_GZIP_WBITS = 16 + zlib.MAX_WBITS


class GuideTooLargeError(ValueError):
    """Raised when a guide exceeds the declared-size or buffer ceiling"""
    pass


class _PassthroughDecoder:
    def feed(self, chunk: bytes, max_output: int) -> bytes:
        return chunk

    def flush(self) -> bytes:
        return b""


class _GunzipDecoder:
    """Incremental gzip decoder that never inflates more than it is allowed to."""

    def __init__(self):
        self._decompressor = zlib.decompressobj(_GZIP_WBITS)

    def feed(self, chunk: bytes, max_output: int) -> bytes:
        out = bytearray()
        data = chunk
        while data and len(out) <= max_output:
            out += self._decompressor.decompress(data, max_output - len(out) + 1)
            if self._decompressor.eof:
                data = self._decompressor.unused_data
                if not data.startswith(_GZIP_MAGIC):
                    # trailing padding after the last member
                    break
                self._decompressor = zlib.decompressobj(_GZIP_WBITS)
            else:
                data = self._decompressor.unconsumed_tail
        return bytes(out)

    def flush(self) -> bytes:
        return self._decompressor.flush()


def _is_gzip_source(url: str, response: httpx.Response) -> bool:
    path = url.split("?", 1)[0].lower()
    encoding = response.headers.get("content-encoding", "").lower()
    return path.endswith(".gz") or "gzip" in encoding


def _make_decoder(first_chunk: bytes, gzip_hint: bool) -> _PassthroughDecoder | _GunzipDecoder:
    if gzip_hint and first_chunk.startswith(_GZIP_MAGIC):
        logger.info("Streaming gzip decompression...")
        return _GunzipDecoder()
    if gzip_hint:
        logger.debug("Gzip expected but payload is plain, reading as-is")
    return _PassthroughDecoder()


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        timeout=settings.epg_fetch_timeout_sec,
        follow_redirects=True,
        max_redirects=settings.epg_max_redirects,
    ) as own_client:
        yield own_client


async def probe_guide_size(client: httpx.AsyncClient, url: str) -> int | None:
    """
    Read the declared Content-Length with a HEAD request.

    Servers that reject HEAD are tolerated; the streamed ceiling still
    applies to the body in that case.
    """
    try:
        response = await client.head(
            url,
            headers=default_headers(),
            timeout=settings.epg_head_timeout_sec,
            follow_redirects=True,
        )
    except httpx.HTTPError as exc:
        logger.debug("HEAD request failed for %s: %s", sanitize_url_for_logging(url), exc)
        return None

    if response.status_code >= 400:
        logger.debug("HEAD request returned HTTP %s, size unknown", response.status_code)
        return None
    return declared_length(response)


async def download_guide(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_declared_bytes: int,
    max_buffer_bytes: int
) -> bytes:
    """
    Stream the guide body, gunzipping inline when needed.

    Raises:
        GuideTooLargeError: As soon as the declared or decompressed size exceeds its ceiling
        httpx.HTTPError: On network or HTTP status errors
    """
    headers = {**default_headers(), "Accept-Encoding": "gzip"}
    async with client.stream(
        "GET",
        url,
        headers=headers,
        timeout=settings.epg_fetch_timeout_sec,
    ) as response:
        response.raise_for_status()

        size = declared_length(response)
        if size is not None and size > max_declared_bytes:
            raise GuideTooLargeError(f"Guide declares {size / MEGABYTE:.1f}MB")

        gzip_hint = _is_gzip_source(url, response)
        decoder: _PassthroughDecoder | _GunzipDecoder | None = None
        buffer = bytearray()

        # aiter_raw: decompression is done here so the ceiling applies to inflated bytes
        async for chunk in response.aiter_raw():
            if not chunk:
                continue
            if decoder is None:
                decoder = _make_decoder(chunk, gzip_hint)
            buffer += decoder.feed(chunk, max_buffer_bytes - len(buffer))
            if len(buffer) > max_buffer_bytes:
                # leaving the stream context closes the connection
                raise GuideTooLargeError(
                    f"Guide exceeds {max_buffer_bytes / MEGABYTE:.0f}MB in-memory ceiling"
                )

        if decoder is not None:
            buffer += decoder.flush()
            if len(buffer) > max_buffer_bytes:
                raise GuideTooLargeError(
                    f"Guide exceeds {max_buffer_bytes / MEGABYTE:.0f}MB in-memory ceiling"
                )

    logger.info("Guide downloaded, size: %.2f MB", len(buffer) / MEGABYTE)
    return bytes(buffer)


def parse_xmltv_bytes(data: bytes) -> GuideIndex:
    """
    Parse an XMLTV document into a GuideIndex.

    Args:
        data: Complete XML document

    Returns:
        GuideIndex keyed by normalized channel id

    Raises:
        etree.XMLSyntaxError: If XML is malformed
    """
    parser = etree.XMLParser(huge_tree=True, resolve_entities=False, no_network=True)
    root = etree.fromstring(data, parser=parser)
    logger.debug("  XML document loaded (root tag: %s)", root.tag)

    programmes = [root] if root.tag == "programme" else root.findall("programme")

    groups: dict[str, list[ProgrammeEntry]] = {}
    skipped = 0
    for programme in programmes:
        entry = _parse_single_programme(programme)
        if entry is None:
            skipped += 1
            continue
        key = normalize_channel_key(entry.channel_ref)
        groups.setdefault(key, []).append(entry)

    index = GuideIndex.from_groups(groups)
    logger.info(
        "XMLTV parsing complete: %s programmes for %s channels (%s skipped)",
        index.programme_count,
        index.channel_count,
        skipped,
    )
    return index


def _parse_single_programme(programme: etree._Element) -> ProgrammeEntry | None:
    """Parse single programme element"""
    channel_id = programme.get("channel")
    if not channel_id or not normalize_channel_key(channel_id):
        return None

    # Bounds are required, never defaulted
    try:
        start = parse_xmltv_time(programme.get("start"))
        stop = parse_xmltv_time(programme.get("stop"))
    except DateFormatError:
        return None

    return ProgrammeEntry(
        channel_ref=channel_id,
        title=_get_text(programme, "title", default="Unknown"),
        description=_get_text(programme, "desc", default=""),
        start=start,
        stop=stop,
    )


def _get_text(element: etree._Element, tag: str, default: str) -> str:
    """Safely extract text from XML element"""
    child = element.find(tag)
    if child is None or not child.text or not child.text.strip():
        return default
    return child.text.strip()


async def _load_guide(url: str, client: httpx.AsyncClient | None) -> GuideIndex | None:
    async with _client_scope(client) as http:
        declared = await probe_guide_size(http, url)
        if declared is not None:
            logger.info("Guide file size: %.1f MB", declared / MEGABYTE)
            if declared > settings.epg_max_declared_bytes:
                raise GuideTooLargeError(f"Guide declares {declared / MEGABYTE:.1f}MB")

        data = await download_guide(
            http,
            url,
            max_declared_bytes=settings.epg_max_declared_bytes,
            max_buffer_bytes=settings.epg_max_buffer_bytes,
        )

    if not data:
        logger.warning("No guide data received from %s", sanitize_url_for_logging(url))
        return None

    # Parsing tens of megabytes is offloaded to keep the event loop responsive
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, parse_xmltv_bytes, data)


async def load_guide(
    guide_url: str | None,
    *,
    client: httpx.AsyncClient | None = None,
    deadline_seconds: float | None = None
) -> GuideIndex | None:
    """
    Download and parse a guide under an overall wall-clock deadline.

    Never raises: oversized, unreachable, malformed or slow guides all
    produce None.

    Args:
        guide_url: Raw guide URL (may be percent-encoded several times)
        client: Optional shared HTTP client
        deadline_seconds: Ceiling for download + decompression + parse

    Returns:
        GuideIndex, or None when the guide is unavailable
    """
    url = normalize_guide_url(guide_url)
    if url is None:
        return None

    deadline = deadline_seconds or settings.epg_deadline_sec
    safe_url = sanitize_url_for_logging(url)
    logger.info("Loading guide from: %s", safe_url)

    try:
        return await asyncio.wait_for(_load_guide(url, client), timeout=deadline)
    except asyncio.TimeoutError:
        logger.error("Guide load exceeded %ss deadline: %s", deadline, safe_url)
    except GuideTooLargeError as exc:
        logger.warning("Guide skipped, %s: %s", exc, safe_url)
    except etree.XMLSyntaxError as exc:
        logger.error("Guide XML parse error: %s", exc)
    except (httpx.HTTPError, zlib.error) as exc:
        logger.error("Guide download failed for %s: %s", safe_url, exc)
    except Exception as exc:  # Catch-all to keep the cache refresh alive
        logger.error("Unexpected error while loading guide: %s", exc, exc_info=True)
    return None


async def build_guide_snapshot(
    guide_url: str,
    *,
    client: httpx.AsyncClient | None = None
) -> GuideSnapshot | None:
    """Cache loader for the guide slot."""
    index = await load_guide(guide_url, client=client)
    if index is None:
        return None
    return GuideSnapshot(index=index, source_url=guide_url, fetched_at=utc_now())
