"""
Programme Lookup Service

Finds the programme currently on air for a channel.
"""
import re
from datetime import datetime

from tvcatalog.services.catalog_types import GuideIndex, GuideSnapshot, ProgrammeEntry
from tvcatalog.utils.timezone import utc_now

_NON_KEY_CHARS_RE = re.compile(r"[^\w.]")


def normalize_channel_key(value: str | None) -> str:
    """Lowercase and strip everything except word characters and dots."""
    if not value:
        return ""
    return _NON_KEY_CHARS_RE.sub("", value.lower())


def lookup_now_playing(
    tvg_id: str | None,
    guide: GuideSnapshot | GuideIndex | None,
    now: datetime | None = None
) -> ProgrammeEntry | None:
    """
    Return the programme whose window contains `now`, or None.

    Both bounds are inclusive. When windows overlap the first entry in
    document order wins.
    """
    if guide is None or not tvg_id:
        return None

    index = guide.index if isinstance(guide, GuideSnapshot) else guide
    key = normalize_channel_key(tvg_id)
    if not key:
        return None

    moment = now or utc_now()
    for entry in index.candidates(key):
        if entry.start <= moment <= entry.stop:
            return entry
    return None
