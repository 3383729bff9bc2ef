import logging
import re

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024

_INTERVAL_RE = re.compile(r"^\d{1,3}:\d{1,2}$")


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    log_level: str = "INFO"

    # Playlist ingestion
    max_channels: int = 10000
    playlist_fetch_timeout_sec: float = 30.0
    playlist_max_bytes: int = 100 * MEGABYTE
    playlist_fetch_retries: int = 2
    default_update_interval: str = "02:00"  # HH:MM

    # Guide ingestion
    epg_refresh_interval_sec: int = 6 * 3600
    epg_head_timeout_sec: float = 10.0
    epg_fetch_timeout_sec: float = 30.0
    epg_max_declared_bytes: int = 100 * MEGABYTE
    epg_max_buffer_bytes: int = 50 * MEGABYTE
    epg_deadline_sec: float = 45.0  # download + decompression + parse
    epg_max_redirects: int = 3

    url_decode_max_iterations: int = 10
    fetch_user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    stream_user_agent: str = "Mozilla/5.0"
    default_group: str = "Other Channels"
    catalog_page_size: int = 100

    cors_allow_origins: str = "*"  # comma-separated

    # Optional cache warm-up
    prefetch_playlist_urls: str | None = None
    prefetch_epg_url: str | None = None
    prefetch_update_interval: str = "02:00"
    prefetch_cron: str = "*/30 * * * *"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins(self) -> list[str]:
        """CORS origins as a list (defaults to allow-all)."""
        origins = [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]
        return origins or ["*"]

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate logging level name."""
        normalized = value.upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if normalized not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return normalized

    @field_validator(
        "max_channels",
        "playlist_max_bytes",
        "epg_refresh_interval_sec",
        "epg_max_declared_bytes",
        "epg_max_buffer_bytes",
        "url_decode_max_iterations",
        "catalog_page_size",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure integer limits are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("playlist_fetch_retries", "epg_max_redirects")
    @classmethod
    def validate_non_negative_ints(cls, value: int, info) -> int:
        """Ensure counters are non-negative."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator(
        "playlist_fetch_timeout_sec",
        "epg_head_timeout_sec",
        "epg_fetch_timeout_sec",
        "epg_deadline_sec",
    )
    @classmethod
    def validate_positive_floats(cls, value: float, info) -> float:
        """Ensure timeouts are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("default_update_interval", "prefetch_update_interval")
    @classmethod
    def validate_update_interval(cls, value: str, info) -> str:
        """Validate HH:MM interval format."""
        if not _INTERVAL_RE.match(value.strip()):
            raise ValueError(f"{info.field_name} must use HH:MM format, got '{value}'")
        return value.strip()

    @field_validator("prefetch_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @model_validator(mode="after")
    def validate_limits(self):
        """Validate cross-field configuration."""
        if self.epg_max_buffer_bytes > self.epg_max_declared_bytes:
            raise ValueError(
                "epg_max_buffer_bytes must be <= epg_max_declared_bytes"
            )

        if self.epg_deadline_sec < self.epg_fetch_timeout_sec:
            logger.warning(
                "epg_deadline_sec (%ss) is shorter than epg_fetch_timeout_sec (%ss)",
                self.epg_deadline_sec,
                self.epg_fetch_timeout_sec,
            )

        if self.prefetch_epg_url and not self.prefetch_playlist_urls:
            logger.warning(
                "PREFETCH_EPG_URL is set without PREFETCH_PLAYLIST_URLS - guide warm-up only"
            )

        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Channel Cap: %s", self.max_channels)
        logger.info(
            "  Playlist Fetch: timeout=%ss max=%.0fMB retries=%s",
            self.playlist_fetch_timeout_sec,
            self.playlist_max_bytes / MEGABYTE,
            self.playlist_fetch_retries,
        )
        logger.info("  Default Update Interval: %s", self.default_update_interval)
        logger.info("  EPG Refresh Interval: %ss", self.epg_refresh_interval_sec)
        logger.info(
            "  EPG Limits: declared=%.0fMB buffer=%.0fMB deadline=%ss",
            self.epg_max_declared_bytes / MEGABYTE,
            self.epg_max_buffer_bytes / MEGABYTE,
            self.epg_deadline_sec,
        )
        logger.info(
            "  Prefetch: %s",
            f"enabled ({self.prefetch_cron})" if self.prefetch_playlist_urls or self.prefetch_epg_url else "disabled",
        )


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
