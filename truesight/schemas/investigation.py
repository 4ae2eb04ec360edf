from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator, constr

from ..models.investigation import ContentProvenance, InvestigationStatus
from ..models.post import Platform

MAX_EXTERNAL_ID_LEN = 512
MAX_URL_LEN = 2048
MAX_MEDIA_URLS = 50


class InvestigateNowRequest(BaseModel):
    platform: Platform
    external_id: constr(min_length=1, max_length=MAX_EXTERNAL_ID_LEN)
    url: constr(min_length=1, max_length=MAX_URL_LEN)
    observed_content_text: constr(min_length=1)
    author_name: str | None = None
    published_at: datetime | None = None
    media_urls: list[str] | None = None

    @field_validator("author_name", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("published_at")
    @classmethod
    def _to_naive_utc(cls, v: datetime | None) -> datetime | None:
        if v is None or v.tzinfo is None:
            return v
        return v.astimezone(timezone.utc).replace(tzinfo=None)

    @field_validator("media_urls")
    @classmethod
    def validate_media_urls(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        cleaned = [u.strip() for u in v if u and u.strip()]
        if len(cleaned) > MAX_MEDIA_URLS:
            raise ValueError(f"media_urls must contain at most {MAX_MEDIA_URLS} entries")
        return cleaned


class ClaimSourceOut(BaseModel):
    url: str
    title: str
    snippet: str

    model_config = ConfigDict(from_attributes=True)


class ClaimOut(BaseModel):
    id: UUID
    text: str
    context: str
    summary: str
    reasoning: str
    sources: list[ClaimSourceOut]

    model_config = ConfigDict(from_attributes=True)


class KeySourceOut(BaseModel):
    fingerprint: str
    key_id: str
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvestigateNowResponse(BaseModel):
    investigation_id: UUID
    status: InvestigationStatus
    provenance: ContentProvenance
    claims: list[ClaimOut] = []
    key_source: KeySourceOut | None = None

    model_config = ConfigDict(from_attributes=True)


class InvestigationOut(BaseModel):
    id: UUID
    post_id: UUID
    content_hash: str
    status: InvestigationStatus
    provenance: ContentProvenance
    fetch_failure_reason: str | None = None
    checked_at: datetime | None = None
    parent_investigation_id: UUID | None = None
    model_version: str | None = None
    created_at: datetime
    claims: list[ClaimOut] = []

    model_config = ConfigDict(from_attributes=True)
