"""Request bodies for the tracking and ingestion endpoints."""

from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# --- Browser beacon (/api/send) ---

class BeaconPayload(BaseModel):
    """Accept what the tracker sends. Unknown keys are ignored."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    website: str
    hostname: str | None = None
    language: str | None = None
    referrer: str | None = None
    screen: str | None = None
    title: str | None = None
    url: str | None = None
    name: str | None = None
    tag: str | None = None
    data: dict[str, Any] | None = None
    ip: str | None = None
    user_agent: str | None = Field(default=None, alias="userAgent")
    timestamp: int | None = None
    distinct_id: str | None = Field(default=None, alias="id")
    scroll_depth: int | None = None
    engagement_time: int | None = None
    props: dict[str, Any] | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None


class BeaconRequest(BaseModel):
    type: str
    payload: BeaconPayload


# --- Server-side ingestion (/api/ingest) ---

class IngestContext(BaseModel):
    ip: str | None = None
    user_agent: str | None = None
    locale: str | None = None
    screen: str | None = None
    hostname: str | None = None


class IngestEvent(BaseModel):
    # Required-ness is checked by validate_ingest_event so every problem is reported at once
    event: str | None = None
    visitor_id: str | None = None
    event_id: UUID | None = None
    url: str | None = None
    title: str | None = None
    referrer: str | None = None
    timestamp: int | None = None  # unix seconds
    properties: dict[str, Any] | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None
    context: IngestContext | None = None


class IngestBatch(BaseModel):
    events: list[IngestEvent] = Field(min_length=1, max_length=100)
