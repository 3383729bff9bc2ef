"""
URL normalization utilities

Playlist and guide URLs reach the service after a round-trip through the
configuration page, so they may be percent-encoded several times and carry
the page's own query parameters glued onto the last playlist URL.
"""
import logging
import re
from urllib.parse import unquote

from tvcatalog.config import settings


logger = logging.getLogger(__name__)

_HTML_AMPERSAND_RE = re.compile(r"&(?:#38|amp);")
_CONTROL_PARAMS_RE = re.compile(r"&(?:epg|language|update_interval|epg_enabled)=[^,]*")
_HTTP_URL_RE = re.compile(r"^https?://.+", re.IGNORECASE)


def decode_repeatedly(raw: str, max_iterations: int | None = None) -> str:
    """
    Percent-decode until the value stops changing.

    Decoding stops at a fixed point, at the iteration cap, or on the first
    decode failure, in which case the last successfully decoded value wins.

    Args:
        raw: Possibly multiply-encoded string
        max_iterations: Upper bound on decode passes (defaults to settings)

    Returns:
        Decoded string
    """
    limit = max_iterations or settings.url_decode_max_iterations
    decoded = raw

    for _ in range(limit):
        if "%" not in decoded:
            break
        try:
            candidate = unquote(decoded, errors="strict")
        except UnicodeDecodeError as exc:
            logger.debug("URL decode stopped on invalid sequence: %s", exc)
            break
        if candidate == decoded:
            break
        decoded = candidate

    return decoded


def strip_control_params(value: str) -> str:
    """Drop HTML-escaped ampersands and the configuration page's own parameters."""
    value = _HTML_AMPERSAND_RE.sub("&", value)
    return _CONTROL_PARAMS_RE.sub("", value)


def is_http_url(value: str) -> bool:
    return bool(_HTTP_URL_RE.match(value))


def normalize_playlist_urls(raw: str | None) -> tuple[str, ...]:
    """
    Turn the raw `m3u` parameter into an ordered tuple of playlist URLs.

    Normalizing an already normalized, comma-joined list returns the same
    tuple, so the result doubles as the playlist cache key.
    """
    if not raw:
        return ()

    decoded = strip_control_params(decode_repeatedly(raw))

    urls = tuple(
        candidate
        for candidate in (part.strip() for part in decoded.split(","))
        if candidate and is_http_url(candidate)
    )
    logger.debug("Normalized %s playlist URL(s) from raw input", len(urls))
    return urls


def normalize_guide_url(raw: str | None) -> str | None:
    """Decode a guide URL; returns None when it is not an absolute HTTP(S) URL."""
    if not raw:
        return None

    decoded = decode_repeatedly(raw).strip()
    if not is_http_url(decoded):
        logger.warning("Ignoring guide URL that is not HTTP/HTTPS: %s", sanitize_url_for_logging(decoded))
        return None
    return decoded


def sanitize_url_for_logging(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    if "://" not in url:
        return url
    try:
        protocol, rest = url.split("://", 1)
        if "@" in rest.split("/", 1)[0]:
            rest = rest.split("@", 1)[1]
            return f"{protocol}://***:***@{rest}"
        return url
    except (ValueError, IndexError):
        return url
