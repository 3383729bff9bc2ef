"""
HTTP fetch utilities

Bounded downloads with retry logic. Documents are kept in memory; every
read is capped by size so a hostile source cannot exhaust the process.
"""
import asyncio
import logging

import httpx

from tvcatalog.config import MEGABYTE, settings
from tvcatalog.utils.url_normalizer import sanitize_url_for_logging


logger = logging.getLogger(__name__)


class DocumentTooLargeError(ValueError):
    """Raised when a remote document exceeds its configured size ceiling"""

    def __init__(self, url: str, limit: int, size: int | None = None):
        self.url = url
        self.limit = limit
        self.size = size
        detail = f"{size / MEGABYTE:.1f}MB" if size is not None else "stream"
        super().__init__(
            f"Document too large ({detail} > {limit / MEGABYTE:.0f}MB): {sanitize_url_for_logging(url)}"
        )


def declared_length(response: httpx.Response) -> int | None:
    """Return the Content-Length header as int, or None when absent/invalid."""
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def default_headers() -> dict[str, str]:
    return {"User-Agent": settings.fetch_user_agent}


async def read_capped(response: httpx.Response, max_bytes: int, url: str) -> bytes:
    """
    Read a streamed response body, aborting as soon as it exceeds max_bytes.

    Raises:
        DocumentTooLargeError: If the declared or received size is above the cap
    """
    size = declared_length(response)
    if size is not None and size > max_bytes:
        raise DocumentTooLargeError(url, max_bytes, size)

    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise DocumentTooLargeError(url, max_bytes)
    return bytes(buffer)


async def fetch_bytes(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float | None = None,
    max_bytes: int | None = None,
    max_retries: int | None = None,
    backoff_factor: float = 2.0
) -> bytes:
    """
    Download a document with exponential backoff retry logic

    Retries on transient network errors (timeouts, connection errors) and
    on 5xx responses. Does NOT retry on 4xx HTTP errors or oversized bodies.

    Args:
        url: URL to download from
        client: Optional shared client (a private one is created otherwise)
        timeout: HTTP timeout in seconds
        max_bytes: Response size ceiling
        max_retries: Extra attempts after the first one
        backoff_factor: Exponential backoff multiplier (wait = backoff_factor ^ attempt)

    Returns:
        Raw response body

    Raises:
        httpx.HTTPError: If download fails after all retries
        DocumentTooLargeError: If the body exceeds max_bytes
    """
    timeout = timeout or settings.playlist_fetch_timeout_sec
    max_bytes = max_bytes or settings.playlist_max_bytes
    attempts = 1 + (settings.playlist_fetch_retries if max_retries is None else max_retries)
    safe_url = sanitize_url_for_logging(url)

    last_error: Exception | None = None

    for attempt in range(attempts):
        try:
            if client is None:
                async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as own_client:
                    return await _get_capped(own_client, url, timeout, max_bytes)
            return await _get_capped(client, url, timeout, max_bytes)

        except (httpx.TimeoutException, httpx.ConnectError) as e:
            # Transient network errors - retry
            last_error = e
            if attempt < attempts - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    f"Download attempt {attempt + 1}/{attempts} failed for {safe_url} "
                    f"(transient error): {type(e).__name__}. Retrying in {wait_time:.1f}s..."
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Download failed after {attempts} attempts (transient error): {safe_url}")

        except httpx.HTTPStatusError as e:
            if 400 <= e.response.status_code < 500:
                logger.error(f"HTTP {e.response.status_code} (client error) for {safe_url}")
                raise

            # 5xx server error - retry
            last_error = e
            if attempt < attempts - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    f"Download attempt {attempt + 1}/{attempts} failed "
                    f"(HTTP {e.response.status_code} server error). "
                    f"Retrying in {wait_time:.1f}s..."
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Download failed after {attempts} attempts (HTTP {e.response.status_code})")

    if last_error:
        raise last_error

    raise RuntimeError(f"Failed to download {safe_url} after {attempts} attempts")


async def _get_capped(client: httpx.AsyncClient, url: str, timeout: float, max_bytes: int) -> bytes:
    async with client.stream("GET", url, headers=default_headers(), timeout=timeout) as response:
        response.raise_for_status()
        body = await read_capped(response, max_bytes, url)

    logger.debug(f"Downloaded {len(body) / MEGABYTE:.2f} MB from {sanitize_url_for_logging(url)}")
    return body
