from pydantic import BaseModel, Field, field_validator


class CatalogExtra(BaseModel):
    """Catalog filter and paging options"""
    search: str | None = Field(None, description="Case-insensitive channel name filter")
    genre: str | None = Field(None, description="Group name to filter on")
    skip: int = Field(0, ge=0, description="Number of channels to skip")

    @field_validator("skip", mode="before")
    @classmethod
    def coerce_skip(cls, v) -> int:
        """Treat malformed skip values as 0"""
        try:
            return max(0, int(v or 0))
        except (TypeError, ValueError):
            return 0


class ManifestExtra(BaseModel):
    name: str
    isRequired: bool = False
    options: list[str] | None = None


class ManifestCatalog(BaseModel):
    type: str = "tv"
    id: str
    name: str
    extra: list[ManifestExtra]


class BehaviorHints(BaseModel):
    configurable: bool = True
    configurationURL: str | None = None
    reloadRequired: bool = True


class ManifestResponse(BaseModel):
    """Add-on manifest"""
    id: str
    version: str
    name: str
    description: str
    logo: str | None = None
    resources: list[str]
    types: list[str]
    idPrefixes: list[str]
    catalogs: list[ManifestCatalog]
    behaviorHints: BehaviorHints


class MetaPreview(BaseModel):
    """Catalog entry for one channel"""
    id: str
    type: str = "tv"
    name: str
    poster: str
    description: str
    genres: list[str]


class CatalogResponse(BaseModel):
    metas: list[MetaPreview] = Field(default_factory=list)


class StreamItem(BaseModel):
    """Playable stream for a channel"""
    name: str
    title: str
    url: str
    behaviorHints: dict | None = None


class StreamResponse(BaseModel):
    streams: list[StreamItem] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Snapshot ages and counts"""
    status: str = "ok"
    channels: int
    genres: int
    playlist_sources: int
    playlist_sources_failed: int
    truncated: bool
    last_update: str | None
    playlist_state: str
    playlist_age_seconds: float | None
    playlist_last_error: str | None
    epg_loaded: bool
    epg_programmes: int
    epg_last_update: str | None
    epg_state: str
    epg_age_seconds: float | None
    epg_last_error: str | None
