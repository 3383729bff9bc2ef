"""
Shared dataclasses used across the catalog and guide pipelines.

Everything published to readers is frozen; lists are stored as tuples so a
snapshot cannot be modified after it has been handed out.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True, slots=True)
class StreamEntry:
    """One playable URL for a channel, with the headers the player should send."""
    url: str
    display_name: str
    request_headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Channel:
    """A playlist channel. `streams` is never empty and is ordered by priority."""
    id: str
    name: str
    tvg_id: str
    group: str
    source_index: int
    streams: tuple[StreamEntry, ...]
    logo: str | None = None


@dataclass(frozen=True, slots=True)
class ProgrammeEntry:
    """A single guide slot, bounds are timezone-aware UTC datetimes."""
    channel_ref: str
    title: str
    description: str
    start: datetime
    stop: datetime


@dataclass(frozen=True, slots=True)
class GuideIndex:
    """Programme entries grouped by normalized channel key, in document order."""
    entries: Mapping[str, tuple[ProgrammeEntry, ...]]
    programme_count: int = 0

    @classmethod
    def from_groups(cls, groups: dict[str, list[ProgrammeEntry]]) -> "GuideIndex":
        frozen = {key: tuple(values) for key, values in groups.items()}
        return cls(
            entries=MappingProxyType(frozen),
            programme_count=sum(len(values) for values in frozen.values()),
        )

    def candidates(self, key: str) -> tuple[ProgrammeEntry, ...]:
        return self.entries.get(key, ())

    @property
    def channel_count(self) -> int:
        return len(self.entries)


@dataclass(frozen=True, slots=True)
class PlaylistResult:
    """Outcome of parsing every playlist source for one refresh."""
    channels: tuple[Channel, ...]
    genres: tuple[str, ...]
    truncated: bool = False
    sources_total: int = 0
    sources_failed: tuple[int, ...] = ()

    @property
    def all_sources_failed(self) -> bool:
        return self.sources_total > 0 and len(self.sources_failed) == self.sources_total


@dataclass(frozen=True, slots=True)
class CatalogSnapshot:
    """Immutable result of one successful playlist ingestion cycle."""
    channels: tuple[Channel, ...]
    genres: tuple[str, ...]
    source_key: tuple[str, ...]
    fetched_at: datetime
    truncated: bool = False
    sources_failed: tuple[int, ...] = ()

    def find_channel(self, channel_id: str) -> Channel | None:
        for channel in self.channels:
            if channel.id == channel_id:
                return channel
        return None


@dataclass(frozen=True, slots=True)
class GuideSnapshot:
    """Immutable result of one successful guide ingestion cycle."""
    index: GuideIndex
    source_url: str
    fetched_at: datetime


__all__ = [
    "StreamEntry",
    "Channel",
    "ProgrammeEntry",
    "GuideIndex",
    "PlaylistResult",
    "CatalogSnapshot",
    "GuideSnapshot",
]
