"""
Services package for TV Catalog Service

This package contains the ingestion core (playlist and guide parsers,
programme lookup, refresh cache) and the read-side query helpers.
"""
from tvcatalog.services.catalog_cache_service import CatalogCache, get_catalog_cache
from tvcatalog.services.catalog_query_service import build_catalog_page, build_streams, parse_catalog_extra
from tvcatalog.services.guide_parser_service import load_guide, parse_xmltv_bytes
from tvcatalog.services.playlist_parser_service import fetch_playlists, parse_m3u
from tvcatalog.services.programme_lookup_service import lookup_now_playing
from tvcatalog.services.scheduler_service import prefetch_scheduler

__all__ = [
    'CatalogCache',
    'get_catalog_cache',
    'build_catalog_page',
    'build_streams',
    'parse_catalog_extra',
    'load_guide',
    'parse_xmltv_bytes',
    'fetch_playlists',
    'parse_m3u',
    'lookup_now_playing',
    'prefetch_scheduler',
]
