from pydantic import BaseModel, ConfigDict, Field, field_serializer
from typing import Optional, Literal
from datetime import datetime

from models import ensure_utc

# --- GitHub payloads (webhook delivery and releases API share the release shape) ---

class GitHubAsset(BaseModel):
    name: str
    browser_download_url: str
    size: int = 0

class GitHubRelease(BaseModel):
    tag_name: str = Field(..., min_length=1, max_length=200)
    name: Optional[str] = None
    published_at: Optional[datetime] = None
    html_url: Optional[str] = None
    assets: list[GitHubAsset] = Field(default_factory=list)

class GitHubRepository(BaseModel):
    full_name: str

class ReleaseWebhook(BaseModel):
    action: str
    release: GitHubRelease
    repository: GitHubRepository

# --- Admin requests ---

class ManualReleaseRequest(BaseModel):
    release_tag: str = Field(..., min_length=1, max_length=200)
    release_name: Optional[str] = Field(None, max_length=200)
    apk_name: str = Field(..., min_length=1, max_length=255)
    apk_url: str = Field(..., min_length=1, max_length=2048)

class BackfillRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Range (1-100) is checked by the backfiller so it answers 400, not 422
    max_releases: int = Field(30, alias="maxReleases")
    auto_download: bool = Field(False, alias="autoDownload")

class WebhookTestRequest(BaseModel):
    tag_name: str = Field(..., min_length=1, max_length=200)
    apk_url: str = Field(..., min_length=1, max_length=2048)
    apk_name: str = Field(..., min_length=1, max_length=255)

class CacheApkRequest(BaseModel):
    apk_url: str = Field(..., min_length=1, max_length=2048)
    apk_name: str = Field(..., min_length=1, max_length=255)

# --- Responses ---

class ApkReleaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    release_tag: str
    release_name: str
    apk_name: str
    apk_url: str
    apk_hash: Optional[str] = None
    apk_size: Optional[int] = None
    download_status: str
    download_error: Optional[str] = None
    published_at: Optional[datetime] = None
    detected_at: Optional[datetime] = None
    downloaded_at: Optional[datetime] = None
    source: str

    @field_serializer("published_at", "detected_at", "downloaded_at")
    def _serialize_dt(self, value: Optional[datetime]) -> Optional[str]:
        value = ensure_utc(value)
        return value.isoformat() if value else None

class ReleaseOutcome(BaseModel):
    tag: str
    status: Literal["added", "skipped", "failed"]
    reason: Optional[str] = None
    release_id: Optional[int] = None
    download_started: bool = False

class BackfillStats(BaseModel):
    total: int = 0
    added: int = 0
    skipped: int = 0
    failed: int = 0

class BackfillResult(BaseModel):
    success: bool
    message: str
    stats: Optional[BackfillStats] = None
    releases: Optional[list[ReleaseOutcome]] = None

class BackfillStatus(BaseModel):
    has_releases: bool
    release_count: int
    completed_count: int
