"""
Catalog Query Service

Read-side logic for the HTTP layer: filtering, paging and rendering of
channels from the current snapshots. Never triggers a refresh itself.
"""
import json
import logging
from urllib.parse import parse_qs, quote, unquote

from pydantic import ValidationError

from tvcatalog.config import settings
from tvcatalog.schemas import CatalogExtra, CatalogResponse, MetaPreview, StreamItem, StreamResponse
from tvcatalog.services.catalog_types import CatalogSnapshot, Channel, GuideSnapshot
from tvcatalog.services.programme_lookup_service import lookup_now_playing
from tvcatalog.utils.timezone import format_clock

logger = logging.getLogger(__name__)

_DESCRIPTION_PREVIEW_CHARS = 100


def parse_catalog_extra(extra: str | None) -> CatalogExtra:
    """
    Parse the catalog `extra` path segment.

    Accepts a JSON object or a `search=..&genre=..&skip=..` query string;
    anything unparsable means "no filters".
    """
    if not extra:
        return CatalogExtra()

    decoded = unquote(extra)
    try:
        if decoded.startswith("{") and decoded.endswith("}"):
            return CatalogExtra.model_validate(json.loads(decoded))

        params = {key: values[0] for key, values in parse_qs(decoded).items() if values}
        return CatalogExtra.model_validate(params)
    except (ValueError, ValidationError) as e:
        logger.error(f"Extra params parse error: {e}")
        return CatalogExtra()


def filter_channels(catalog: CatalogSnapshot, extra: CatalogExtra) -> list[Channel]:
    channels = list(catalog.channels)

    if extra.search:
        term = extra.search.lower()
        channels = [channel for channel in channels if term in channel.name.lower()]

    # the default group acts as "all channels"
    if extra.genre and extra.genre != settings.default_group:
        channels = [channel for channel in channels if channel.group == extra.genre]

    return channels


def build_description(channel: Channel, guide: GuideSnapshot | None) -> str:
    lines = [f"📺 {channel.name}"]
    if channel.group:
        lines.append(f"🏷️ {channel.group}")
    lines.append(f"📡 Source {channel.source_index + 1}")

    programme = lookup_now_playing(channel.tvg_id, guide)
    if programme is not None:
        lines.append("")
        lines.append(f"🔴 NOW: {programme.title}")
        if programme.description:
            lines.append(programme.description[:_DESCRIPTION_PREVIEW_CHARS])
        lines.append(f"⏰ {format_clock(programme.start)} - {format_clock(programme.stop)}")

    return "\n".join(lines)


def _placeholder_poster(name: str) -> str:
    return f"https://via.placeholder.com/300x450/3a4556/ffffff?text={quote(name[:2])}"


def build_catalog_page(
    catalog: CatalogSnapshot,
    guide: GuideSnapshot | None,
    extra: CatalogExtra,
    page_size: int | None = None
) -> CatalogResponse:
    """
    Render one page of catalog metas

    Args:
        catalog: Current catalog snapshot
        guide: Current guide snapshot (optional)
        extra: Filters and paging offset
        page_size: Items per page (defaults to settings)

    Returns:
        CatalogResponse with channel metas
    """
    size = page_size or settings.catalog_page_size
    filtered = filter_channels(catalog, extra)
    page = filtered[extra.skip:extra.skip + size]

    logger.info(f"Catalog: {len(page)} channels ({extra.skip}-{extra.skip + len(page)})")

    return CatalogResponse(
        metas=[
            MetaPreview(
                id=channel.id,
                name=channel.name,
                poster=channel.logo or _placeholder_poster(channel.name),
                description=build_description(channel, guide),
                genres=[channel.group],
            )
            for channel in page
        ]
    )


def build_streams(catalog: CatalogSnapshot | None, channel_id: str) -> StreamResponse:
    """Render the streams of one channel, in priority order."""
    if catalog is None:
        return StreamResponse()

    channel = catalog.find_channel(channel_id)
    if channel is None:
        logger.debug(f"Stream request for unknown channel {channel_id}")
        return StreamResponse()

    streams = []
    for position, stream in enumerate(channel.streams):
        suffix = f" ({position + 1})" if position > 0 else ""
        streams.append(
            StreamItem(
                name=f"📺 {stream.display_name} [Source {channel.source_index + 1}]{suffix}",
                title=channel.name,
                url=stream.url,
                behaviorHints={
                    "notWebReady": True,
                    "proxyHeaders": {"request": dict(stream.request_headers)},
                },
            )
        )
    return StreamResponse(streams=streams)
