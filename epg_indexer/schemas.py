from pydantic import BaseModel, ConfigDict, Field, field_validator

from epg_indexer.config import settings


class EpgSourceCreate(BaseModel):
    """New EPG source request"""
    name: str = Field(..., min_length=1, description="Unique source name (also used as cache key)")
    url: str = Field(..., min_length=1, description="XMLTV feed URL")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject names that are blank after trimming"""
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate EPG source URL is HTTP/HTTPS"""
        v = v.strip()
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(f"EPG source URL must be HTTP/HTTPS: {v}")
        return v


class EpgSourceResponse(BaseModel):
    """Configured EPG source with cache state"""
    id: int
    name: str
    url: str
    status: str = Field(..., description="'active' once a document was downloaded, else 'pending'")
    updatedAt: int | None = Field(None, description="Epoch ms of the last successful download")


class EpgSourceCreated(BaseModel):
    id: int
    name: str
    refreshing: bool


class EpgChannelNames(BaseModel):
    """One identifier of the combined index with its known names"""
    id: str
    names: list[str]


class RefreshStatusResponse(BaseModel):
    """Current or last EPG refresh progress"""
    running: bool
    phase: str
    current: int
    total: int
    lastRun: int | None = Field(None, description="Epoch ms when the last refresh resolved")
    lastError: str | None = Field(None, description="Structural failure of the last refresh")


class RefreshTriggerResponse(BaseModel):
    started: bool
    message: str


class AutoMapRequest(BaseModel):
    """Auto-mapping request"""
    model_config = ConfigDict(populate_by_name=True)

    source: str | None = Field(None, description="Only map channels of this source type (e.g. 'm3u', 'xtream')")
    min_score: float = Field(
        default_factory=lambda: settings.automap_min_score,
        alias="minScore",
        ge=0,
        le=1,
        description="Minimum similarity score for a match",
    )
    dry_run: bool = Field(False, alias="dryRun", description="Report matches without saving them")
    epg_source: str | None = Field(None, alias="epgSource", description="Source label stored with each match")


class AutoMapSample(BaseModel):
    channel: str
    match: str
    tvg_id: str
    score: float


class AutoMapResponse(BaseModel):
    """Auto-mapping outcome"""
    ok: bool = True
    updated: int
    skipped: int
    minScore: float
    sample: list[AutoMapSample]
