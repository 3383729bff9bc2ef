"""
Catalog Cache Service

Read API of the core: one playlist slot and one guide slot, each refreshed
on its own interval. Callers always get the best known state; failures
degrade to the previous snapshot or to an empty catalog.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable

from tvcatalog.config import settings
from tvcatalog.services.catalog_types import CatalogSnapshot, GuideSnapshot, ProgrammeEntry
from tvcatalog.services.guide_parser_service import build_guide_snapshot
from tvcatalog.services.playlist_parser_service import build_catalog_snapshot
from tvcatalog.services.programme_lookup_service import lookup_now_playing
from tvcatalog.services.refresh_cache import Loader, RefreshSlot
from tvcatalog.utils.timezone import parse_update_interval, utc_now
from tvcatalog.utils.url_normalizer import normalize_guide_url, normalize_playlist_urls


logger = logging.getLogger(__name__)


def empty_catalog(source_key: tuple[str, ...] = ()) -> CatalogSnapshot:
    """Catalog returned when nothing could be loaded; still carries the default genre."""
    return CatalogSnapshot(
        channels=(),
        genres=(settings.default_group,),
        source_key=source_key,
        fetched_at=utc_now(),
    )


class CatalogCache:
    """
    Explicit cache service owning the playlist and guide snapshots.

    The playlist slot holds exactly one playlist configuration; asking for
    a different URL list evicts the cached catalog.
    """

    def __init__(
        self,
        *,
        playlist_loader: Loader = build_catalog_snapshot,
        guide_loader: Loader = build_guide_snapshot,
        guide_interval_sec: float | None = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._playlist_loader = playlist_loader
        self._guide_loader = guide_loader
        self._guide_interval = guide_interval_sec or settings.epg_refresh_interval_sec
        self.playlists: RefreshSlot[tuple[str, ...], CatalogSnapshot] = RefreshSlot("playlist", clock=clock)
        self.guide: RefreshSlot[str, GuideSnapshot] = RefreshSlot("guide", clock=clock)
        self._playlist_interval: float | None = None

    async def get_catalog(self, playlist_urls: str | None, update_interval: str | None = None) -> CatalogSnapshot:
        """
        Return the catalog for a raw playlist URL list.

        Args:
            playlist_urls: Raw `m3u` value (comma-separated, possibly encoded)
            update_interval: `HH:MM` refresh interval; malformed values use the default

        Returns:
            Current CatalogSnapshot, or an empty one when nothing is available
        """
        key = normalize_playlist_urls(playlist_urls)
        if not key:
            logger.warning("No valid playlist URLs in request")
            return empty_catalog()

        interval = parse_update_interval(update_interval).total_seconds()
        self._playlist_interval = interval

        snapshot = await self.playlists.get(key, interval, self._playlist_loader)
        return snapshot if snapshot is not None else empty_catalog(key)

    async def get_guide(self, guide_url: str | None) -> GuideSnapshot | None:
        """Return the guide snapshot for a URL, or None when disabled or unavailable."""
        key = normalize_guide_url(guide_url)
        if key is None:
            return None
        return await self.guide.get(key, self._guide_interval, self._guide_loader)

    async def latest_catalog(self) -> CatalogSnapshot:
        """
        Catalog for whichever playlist list was requested last.

        Used by routes that do not carry the playlist URLs themselves; a
        stale catalog is served while it refreshes in the background.
        """
        key = self.playlists.key
        if not key:
            return empty_catalog()
        interval = self._playlist_interval or parse_update_interval(None).total_seconds()
        snapshot = await self.playlists.get(key, interval, self._playlist_loader)
        return snapshot if snapshot is not None else empty_catalog(key)

    def latest_guide(self) -> GuideSnapshot | None:
        """
        Guide for whichever guide URL was requested last, without waiting.

        An unavailable guide is only retried by `get_guide` (manifest route,
        prefetch job); a stale one is refreshed in the background.
        """
        if not self.guide.key:
            return None
        return self.guide.peek(self._guide_interval, self._guide_loader)

    @staticmethod
    def lookup_now_playing(
        tvg_id: str | None,
        guide: GuideSnapshot | None,
        now: datetime | None = None
    ) -> ProgrammeEntry | None:
        return lookup_now_playing(tvg_id, guide, now)

    def status(self) -> dict:
        """Snapshot ages and counts for the health endpoint."""
        catalog = self.playlists.snapshot
        guide = self.guide.snapshot
        return {
            "channels": len(catalog.channels) if catalog else 0,
            "genres": len(catalog.genres) if catalog else 0,
            "playlist_sources": len(catalog.source_key) if catalog else 0,
            "playlist_sources_failed": len(catalog.sources_failed) if catalog else 0,
            "truncated": catalog.truncated if catalog else False,
            "last_update": catalog.fetched_at.isoformat() if catalog else None,
            "playlist_state": self.playlists.state(self._playlist_interval).value,
            "playlist_age_seconds": self.playlists.age_seconds(),
            "playlist_last_error": self.playlists.last_error,
            "epg_loaded": guide is not None,
            "epg_programmes": guide.index.programme_count if guide else 0,
            "epg_last_update": guide.fetched_at.isoformat() if guide else None,
            "epg_state": self.guide.state(self._guide_interval).value,
            "epg_age_seconds": self.guide.age_seconds(),
            "epg_last_error": self.guide.last_error,
        }


# Global singleton instance
_cache: CatalogCache | None = None


def get_catalog_cache() -> CatalogCache:
    """
    Get or create the global catalog cache singleton.

    Returns:
        The global CatalogCache instance
    """
    global _cache
    if _cache is None:
        _cache = CatalogCache()
    return _cache


def reset_catalog_cache() -> None:
    """
    Reset the catalog cache (mainly for testing).

    WARNING: Only use this in test environments!
    """
    global _cache
    _cache = None
