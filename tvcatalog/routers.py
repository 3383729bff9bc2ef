from typing import Annotated
from urllib.parse import urlencode
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from tvcatalog.schemas import (
    BehaviorHints,
    CatalogResponse,
    HealthResponse,
    ManifestCatalog,
    ManifestExtra,
    ManifestResponse,
    StreamResponse,
)
from tvcatalog.services import (
    CatalogCache,
    build_catalog_page,
    build_streams,
    get_catalog_cache,
    parse_catalog_extra,
    prefetch_scheduler,
)


logger = logging.getLogger(__name__)

main_router = APIRouter()

SERVICE_NAME = "TV Catalog Service"
SERVICE_VERSION = "1.0.0"
CATALOG_ID = "omg_tv"

CacheDep = Annotated[CatalogCache, Depends(get_catalog_cache)]


def _base_url(request: Request) -> str:
    protocol = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{protocol}://{host}"


@main_router.get("/")
async def root() -> dict:
    """Root endpoint with service information"""
    next_run = prefetch_scheduler.get_next_run_time()

    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "next_scheduled_prefetch": next_run.isoformat() if next_run else None,
        "endpoints": {
            "manifest": "/manifest.json?m3u=...&epg=...&epg_enabled=true&update_interval=HH:MM",
            "catalog": "/catalog/tv/omg_tv.json - Channel catalog",
            "stream": "/stream/tv/{id}.json - Streams for a channel",
            "health": "/health - Health check"
        }
    }


@main_router.get("/health", response_model=HealthResponse)
async def health_check(cache: CacheDep) -> HealthResponse:
    """Health check endpoint with snapshot ages and counts"""
    return HealthResponse(**cache.status())


@main_router.get("/manifest.json", response_model=ManifestResponse)
async def manifest(
    request: Request,
    response: Response,
    cache: CacheDep,
    m3u: Annotated[str | None, Query(description="Comma-separated playlist URLs")] = None,
    epg: Annotated[str | None, Query(description="XMLTV guide URL (.xml or .xml.gz)")] = None,
    epg_enabled: Annotated[str | None, Query()] = None,
    update_interval: Annotated[str | None, Query(description="HH:MM refresh interval")] = None,
) -> ManifestResponse:
    """
    Refresh the catalog when due and describe the add-on

    The guide is only loaded when `epg_enabled=true` and an `epg` URL is given.
    """
    if not m3u:
        raise HTTPException(status_code=400, detail="M3U URL required")

    catalog = await cache.get_catalog(m3u, update_interval)

    if epg and (epg_enabled or "").lower() == "true":
        guide = await cache.get_guide(epg)
        logger.info("Guide %s", "available" if guide else "unavailable")

    response.headers["Cache-Control"] = "public, max-age=3600"
    return ManifestResponse(
        id="org.omgtv.slim",
        version=SERVICE_VERSION,
        name="OMG TV Slim",
        description="Lightweight M3U playlist addon with EPG support",
        logo="https://github.com/mik25/OMG-Premium-TV/blob/main/tv.png?raw=true",
        resources=["stream", "catalog"],
        types=["tv"],
        idPrefixes=["tv"],
        catalogs=[
            ManifestCatalog(
                id=CATALOG_ID,
                name="OMG TV",
                extra=[
                    ManifestExtra(name="genre", options=list(catalog.genres)),
                    ManifestExtra(name="search"),
                    ManifestExtra(name="skip"),
                ],
            )
        ],
        behaviorHints=BehaviorHints(
            configurationURL=f"{_base_url(request)}/?{urlencode(dict(request.query_params))}",
        ),
    )


@main_router.get("/catalog/{content_type}/{catalog_id}.json", response_model=CatalogResponse)
@main_router.get("/catalog/{content_type}/{catalog_id}/{extra}.json", response_model=CatalogResponse)
async def catalog(
    content_type: str,
    catalog_id: str,
    response: Response,
    cache: CacheDep,
    extra: str | None = None,
) -> CatalogResponse:
    """Page of channels, optionally filtered by search term and genre"""
    try:
        snapshot = await cache.latest_catalog()
        guide = cache.latest_guide()
        page = build_catalog_page(snapshot, guide, parse_catalog_extra(extra))
    except Exception as e:
        logger.error(f"Catalog error: {e}", exc_info=True)
        return CatalogResponse()

    response.headers["Cache-Control"] = "public, max-age=300"
    return page


@main_router.get("/stream/{content_type}/{channel_id}.json", response_model=StreamResponse)
async def stream(
    content_type: str,
    channel_id: str,
    response: Response,
    cache: CacheDep,
) -> StreamResponse:
    """Streams for a channel id, in priority order"""
    try:
        snapshot = await cache.latest_catalog()
        streams = build_streams(snapshot, channel_id)
    except Exception as e:
        logger.error(f"Stream error: {e}", exc_info=True)
        return StreamResponse()

    response.headers["Cache-Control"] = "public, max-age=3600"
    return streams
