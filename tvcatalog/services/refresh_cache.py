"""
Refresh Coordination

Keyed, time-to-live snapshot slots with single-flight refreshes.
Replaces global mutable cache fields with a class that owns the snapshot
pointer and publishes new values by replacing it.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

from tvcatalog.utils.logging_helpers import log_refresh_end, log_refresh_start


logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

Loader = Callable[[K], Awaitable[T | None]]


class SlotState(str, Enum):
    EMPTY = "empty"
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"


class RefreshSlot(Generic[K, T]):
    """
    Holds the latest snapshot for one resource and coordinates its refreshes.

    - EMPTY: the first reader starts a refresh and waits for it.
    - FRESH: readers get the snapshot immediately.
    - STALE: the next reader starts a background refresh; everybody keeps
      getting the previous snapshot until the new one is published.
    - REFRESHING: at most one refresh task exists; further triggers join it.

    A loader returning None (or raising) counts as a failed refresh: the
    previous snapshot stays and the next read retries. Changing the key
    evicts the snapshot and results for the old key are never published.
    """

    def __init__(self, name: str, *, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._clock = clock
        self._key: K | None = None
        self._snapshot: T | None = None
        self._refreshed_at: float | None = None
        self._interval: float | None = None
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._refresh_count = 0
        self._last_error: str | None = None

    @property
    def key(self) -> K | None:
        return self._key

    @property
    def snapshot(self) -> T | None:
        return self._snapshot

    @property
    def refresh_count(self) -> int:
        """Number of refreshes started since creation."""
        return self._refresh_count

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def is_refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    def age_seconds(self) -> float | None:
        if self._refreshed_at is None:
            return None
        return max(0.0, self._clock() - self._refreshed_at)

    def state(self, interval: float | None = None) -> SlotState:
        if self.is_refreshing():
            return SlotState.REFRESHING
        if self._snapshot is None:
            return SlotState.EMPTY
        if self._is_stale(interval if interval is not None else self._interval):
            return SlotState.STALE
        return SlotState.FRESH

    def _is_stale(self, interval: float | None) -> bool:
        age = self.age_seconds()
        if age is None:
            return True
        return interval is not None and age >= interval

    async def get(self, key: K, interval: float, loader: Loader) -> T | None:
        """
        Return the snapshot for `key`, refreshing it when due.

        Args:
            key: Resource key; a different key than the cached one forces a refresh
            interval: Freshness window in seconds
            loader: Coroutine function building a new snapshot for a key

        Returns:
            The current snapshot, or None when nothing could be loaded yet
        """
        self._interval = interval

        if key != self._key:
            self._evict(key)

        if self._snapshot is None:
            task = self._ensure_refresh(loader, reason="empty")
            # shield: a cancelled reader must not cancel the shared refresh
            return await asyncio.shield(task)

        if self._is_stale(interval):
            self._ensure_refresh(loader, reason="stale")

        return self._snapshot

    def peek(self, interval: float, loader: Loader) -> T | None:
        """
        Return the current snapshot without ever waiting for a load.

        A stale snapshot starts a background refresh; an empty slot is left
        alone so the blocking retry stays with `get`.
        """
        if self._snapshot is not None and self._is_stale(interval):
            self._ensure_refresh(loader, reason="stale")
        return self._snapshot

    async def refresh(self, loader: Loader) -> T | None:
        """Force a refresh of the current key and wait for its outcome."""
        if self._key is None:
            raise RuntimeError(f"{self.name} has no key to refresh")
        return await asyncio.shield(self._ensure_refresh(loader, reason="forced"))

    def clear(self) -> None:
        """Drop the snapshot and forget the key (mainly for testing)."""
        self._evict(None)

    def _evict(self, key: K | None) -> None:
        if self._key is not None:
            logger.info("%s key changed, evicting cached snapshot", self.name)
        self._generation += 1
        self._key = key
        self._snapshot = None
        self._refreshed_at = None
        self._last_error = None
        # an in-flight task for the old key finishes on its own but cannot publish
        self._task = None

    def _ensure_refresh(self, loader: Loader, *, reason: str) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            logger.debug("%s refresh already in progress, joining it", self.name)
            return self._task

        self._refresh_count += 1
        self._task = asyncio.create_task(
            self._run_refresh(self._key, self._generation, loader, reason),
            name=f"refresh-{self.name}",
        )
        return self._task

    async def _run_refresh(self, key: K, generation: int, loader: Loader, reason: str) -> T | None:
        log_refresh_start(logger, self.name, reason)
        started = time.perf_counter()
        error: str | None = None

        try:
            snapshot = await loader(key)
        except Exception as exc:  # Catch-all so a failed refresh never breaks readers
            logger.error("%s refresh failed: %s", self.name, exc, exc_info=True)
            snapshot = None
            error = str(exc) or type(exc).__name__

        if generation != self._generation:
            logger.info("%s refresh result discarded, key changed meanwhile", self.name)
            return snapshot

        published = snapshot is not None
        if published:
            self._snapshot = snapshot
            self._refreshed_at = self._clock()
            self._last_error = None
        else:
            self._last_error = error or "loader returned no data"

        log_refresh_end(logger, self.name, time.perf_counter() - started, published)
        return self._snapshot
