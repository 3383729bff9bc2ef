"""
Logging helpers shared by the ingestion services.

Keeps the per-source and per-refresh log lines uniform and never logs
credentials embedded in source URLs.
"""
import logging

from tvcatalog.utils.url_normalizer import sanitize_url_for_logging


def log_source_processing(logger: logging.Logger, idx: int, total: int, url: str) -> None:
    """
    Log source processing header.

    Args:
        logger: Logger instance
        idx: Current source index (0-based, displayed 1-based)
        total: Total number of sources
        url: Source URL being processed
    """
    logger.info(f"Processing source {idx + 1}/{total}: {sanitize_url_for_logging(url)[:80]}")


def log_refresh_start(logger: logging.Logger, resource: str, reason: str) -> None:
    """Log the start of a cache refresh."""
    logger.info(f"Refreshing {resource} ({reason})")


def log_refresh_end(logger: logging.Logger, resource: str, elapsed: float, published: bool) -> None:
    """
    Log the outcome of a cache refresh.

    Args:
        logger: Logger instance
        resource: Name of the refreshed resource
        elapsed: Refresh duration in seconds
        published: Whether a new snapshot replaced the old one
    """
    outcome = "published new snapshot" if published else "kept previous snapshot"
    logger.info(f"Refresh of {resource} finished in {elapsed:.2f}s - {outcome}")


def log_catalog_summary(
    logger: logging.Logger,
    channels_count: int,
    genres_count: int,
    failed_sources: int
) -> None:
    """
    Log playlist parse summary.

    Args:
        logger: Logger instance
        channels_count: Number of committed channels
        genres_count: Number of distinct genres
        failed_sources: Number of sources that could not be fetched
    """
    logger.info(
        f"Catalog summary - Channels: {channels_count}, Genres: {genres_count}, Failed sources: {failed_sources}"
    )
