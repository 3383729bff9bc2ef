"""
Playlist Parser Service

Downloads M3U/EXTM3U playlists and turns them into channel lists.
Sources are processed strictly in input order because the source index is
part of every channel id.
"""
from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import AsyncIterator, Sequence

import httpx

from tvcatalog.config import settings
from tvcatalog.services.catalog_types import CatalogSnapshot, Channel, PlaylistResult, StreamEntry
from tvcatalog.utils.http_fetch import fetch_bytes
from tvcatalog.utils.logging_helpers import log_catalog_summary, log_source_processing
from tvcatalog.utils.timezone import utc_now
from tvcatalog.utils.url_normalizer import sanitize_url_for_logging


logger = logging.getLogger(__name__)

_EXTINF = "#EXTINF:"
_EXTGRP = "#EXTGRP:"
_EXTVLCOPT = "#EXTVLCOPT:"
_ATTRIBUTE_RE = re.compile(r'([\w-]+)="([^"]*)"')
_STREAM_URL_RE = re.compile(r"^(?:https?|rtmp[a-z]?)://", re.IGNORECASE)
_SLUG_RE = re.compile(r"[^\w]")

# VLC options that translate into request headers for the player
_VLCOPT_HEADERS = {
    "http-user-agent": "User-Agent",
    "http-referrer": "Referer",
    "http-referer": "Referer",
    "http-origin": "Origin",
}


@dataclass(slots=True)
class _PendingChannel:
    name: str
    tvg_id: str
    logo: str | None
    group: str
    has_explicit_group: bool
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class _ChannelDraft:
    id: str
    name: str
    tvg_id: str
    logo: str | None
    group: str
    source_index: int
    streams: list[StreamEntry] = field(default_factory=list)


class CatalogBuilder:
    """
    Accumulates channels across playlist sources.

    Keeps document order, enforces the global channel cap and keeps ids
    unique: a repeated id within one source becomes an extra stream of the
    channel that was committed first.
    """

    def __init__(self, max_channels: int | None = None, default_group: str | None = None):
        self.max_channels = max_channels or settings.max_channels
        self.default_group = default_group or settings.default_group
        self.truncated = False
        self._drafts: dict[str, _ChannelDraft] = {}
        self._genres: dict[str, None] = {self.default_group: None}

    @property
    def channel_count(self) -> int:
        return len(self._drafts)

    @property
    def is_full(self) -> bool:
        return len(self._drafts) >= self.max_channels

    def add_genre(self, group: str) -> None:
        self._genres.setdefault(group, None)

    def commit(self, pending: _PendingChannel, url: str, source_index: int) -> bool:
        """Attach a stream to the pending channel; returns True for a new channel."""
        channel_id = f"tv|{pending.tvg_id}_{source_index}"
        headers = {"User-Agent": settings.stream_user_agent, **pending.headers}
        stream = StreamEntry(
            url=url,
            display_name=pending.name,
            request_headers=MappingProxyType(headers),
        )

        draft = self._drafts.get(channel_id)
        if draft is not None:
            draft.streams.append(stream)
            return False

        self._drafts[channel_id] = _ChannelDraft(
            id=channel_id,
            name=pending.name,
            tvg_id=pending.tvg_id,
            logo=pending.logo,
            group=pending.group,
            source_index=source_index,
            streams=[stream],
        )
        return True

    def build(self, sources_total: int = 0, sources_failed: Sequence[int] = ()) -> PlaylistResult:
        channels = tuple(
            Channel(
                id=draft.id,
                name=draft.name,
                tvg_id=draft.tvg_id,
                group=draft.group,
                source_index=draft.source_index,
                streams=tuple(draft.streams),
                logo=draft.logo,
            )
            for draft in self._drafts.values()
        )
        return PlaylistResult(
            channels=channels,
            genres=tuple(self._genres),
            truncated=self.truncated,
            sources_total=sources_total,
            sources_failed=tuple(sources_failed),
        )


def slugify_name(name: str) -> str:
    return _SLUG_RE.sub("_", name.lower())


def _parse_extinf(line: str, default_group: str) -> _PendingChannel:
    """Parse an `#EXTINF:` line into a pending channel."""
    metadata = line[len(_EXTINF):].strip()

    name = "Unknown"
    if "," in metadata:
        name = metadata.rpartition(",")[2].strip() or "Unknown"

    attributes = {key.lower(): value.strip() for key, value in _ATTRIBUTE_RE.findall(metadata)}
    group = attributes.get("group-title") or ""

    return _PendingChannel(
        name=name,
        tvg_id=attributes.get("tvg-id") or slugify_name(name),
        logo=attributes.get("tvg-logo") or None,
        group=group or default_group,
        has_explicit_group=bool(group),
    )


def _apply_vlcopt(pending: _PendingChannel, line: str) -> None:
    option, _, value = line[len(_EXTVLCOPT):].partition("=")
    header = _VLCOPT_HEADERS.get(option.strip().lower())
    if header and value.strip():
        pending.headers[header] = value.strip()


def parse_m3u_text(text: str, source_index: int, builder: CatalogBuilder) -> int:
    """
    Parse one playlist document into the builder.

    A metadata line starts a pending channel; the next stream URL line
    commits it. A metadata line that is never followed by a URL yields
    nothing. Stops as soon as the builder's channel cap is reached.

    Args:
        text: Decoded playlist document
        source_index: Position of the source in the playlist list
        builder: Shared accumulator for all sources

    Returns:
        Number of new channels committed from this document
    """
    pending: _PendingChannel | None = None
    committed = 0
    lines = text.splitlines()

    for position, raw_line in enumerate(lines):
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith(_EXTINF):
            pending = _parse_extinf(line, builder.default_group)
            builder.add_genre(pending.group)
            continue

        if pending is None:
            continue

        if line.startswith(_EXTGRP):
            group = line[len(_EXTGRP):].strip()
            if group and not pending.has_explicit_group:
                pending.group = group
                builder.add_genre(group)
            continue

        if line.startswith(_EXTVLCOPT):
            _apply_vlcopt(pending, line)
            continue

        if not _STREAM_URL_RE.match(line):
            continue

        if builder.commit(pending, line, source_index):
            committed += 1
        pending = None

        if builder.is_full:
            if any(rest.strip() for rest in lines[position + 1:]):
                builder.truncated = True
                logger.warning(
                    "[Source %s] Channel limit (%s) reached, remaining lines ignored",
                    source_index + 1,
                    builder.max_channels,
                )
            break

    return committed


def parse_m3u(text: str, source_index: int = 0, *, max_channels: int | None = None) -> PlaylistResult:
    """Parse a single playlist document without any network access."""
    builder = CatalogBuilder(max_channels=max_channels)
    parse_m3u_text(text, source_index, builder)
    return builder.build(sources_total=1)


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        timeout=settings.playlist_fetch_timeout_sec,
        follow_redirects=True,
    ) as own_client:
        yield own_client


async def fetch_playlists(
    urls: Sequence[str],
    *,
    max_channels: int | None = None,
    client: httpx.AsyncClient | None = None
) -> PlaylistResult:
    """
    Download and parse every playlist source in order.

    A failing source is logged and skipped; it never aborts its siblings.
    Once the channel cap is reached the remaining sources are not fetched.

    Args:
        urls: Normalized playlist URLs
        max_channels: Global channel cap (defaults to settings)
        client: Optional shared HTTP client

    Returns:
        PlaylistResult with channels, genres and per-source failure info
    """
    builder = CatalogBuilder(max_channels=max_channels)
    failed: list[int] = []
    total = len(urls)

    async with _client_scope(client) as http:
        for index, url in enumerate(urls):
            if builder.is_full:
                builder.truncated = True
                logger.warning(
                    "Channel limit (%s) reached, skipping %s remaining source(s)",
                    builder.max_channels,
                    total - index,
                )
                break

            log_source_processing(logger, index, total, url)
            try:
                body = await fetch_bytes(url, client=http)
            except Exception as exc:
                logger.error(
                    "[Source %s] Failed to fetch %s: %s",
                    index + 1,
                    sanitize_url_for_logging(url),
                    exc,
                )
                failed.append(index)
                continue

            text = body.decode("utf-8-sig", errors="replace")
            added = parse_m3u_text(text, index, builder)
            logger.info("[Source %s] Parsed %s channels", index + 1, added)

    result = builder.build(sources_total=total, sources_failed=failed)
    log_catalog_summary(logger, len(result.channels), len(result.genres), len(failed))
    return result


async def build_catalog_snapshot(
    urls: tuple[str, ...],
    *,
    client: httpx.AsyncClient | None = None
) -> CatalogSnapshot | None:
    """
    Cache loader for the playlist slot.

    Returns None when every source failed so the cache keeps its previous
    snapshot instead of replacing it with an empty catalog.
    """
    result = await fetch_playlists(urls, client=client)

    if result.all_sources_failed:
        logger.error("All %s playlist source(s) failed - refresh discarded", result.sources_total)
        return None

    return CatalogSnapshot(
        channels=result.channels,
        genres=result.genres,
        source_key=tuple(urls),
        fetched_at=utc_now(),
        truncated=result.truncated,
        sources_failed=result.sources_failed,
    )
