"""
Database models — the "truth layer."

Design principles:
  - Events are append-only (no updates/deletes on website_event)
  - Sessions are upserted: entry_page written once, exit_page follows the visitor
  - ip_metadata and rate_limit_counters are shared mutable state, only ever
    touched through atomic upserts or row locks
  - event_idempotency is partitioned by day on PostgreSQL
"""

import datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

EVENT_TYPE_PAGEVIEW = 1
EVENT_TYPE_CUSTOM = 2


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Entity tables (owned by website management, read-only to ingestion)
# ---------------------------------------------------------------------------

class Website(Base):
    __tablename__ = "website"

    website_id = Column(Uuid, primary_key=True, default=uuid4)
    domain = Column(String(500), nullable=False)
    name = Column(String(100), nullable=True)
    allowed_domains = Column(JSONType, nullable=False, default=list)
    proxy_mode = Column(String(20), nullable=False, default="none")  # none, xforwarded, cloudflare
    api_rate_limit_per_minute = Column(Integer, nullable=True, default=5000)
    public_stats_enabled = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


class UserSession(Base):
    """Dashboard login sessions. Only consulted here to gate self-tracking."""
    __tablename__ = "user_sessions"

    token_hash = Column(String(64), primary_key=True)  # SHA-256 hex of the cookie value
    user_id = Column(Uuid, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Ingestion tables
# ---------------------------------------------------------------------------

class VisitorSession(Base):
    """
    One browsing session per (website, ip, ua, month).
    entry_page is set on insert only; exit_page is overwritten by every beacon.
    """
    __tablename__ = "session"

    session_id = Column(Uuid, primary_key=True)
    website_id = Column(Uuid, nullable=False, index=True)
    browser = Column(String(20), nullable=True)
    os = Column(String(20), nullable=True)
    device = Column(String(20), nullable=True)
    screen = Column(String(11), nullable=True)
    language = Column(String(35), nullable=True)
    country = Column(String(2), nullable=True)
    region = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)
    distinct_id = Column(String(50), nullable=True)
    entry_page = Column(String(500), nullable=True)
    exit_page = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_session_website_created", "website_id", "created_at"),
    )


class WebsiteEvent(Base):
    """One pageview (event_type=1) or custom event (event_type=2). Immutable."""
    __tablename__ = "website_event"

    event_id = Column(Uuid, primary_key=True)
    website_id = Column(Uuid, nullable=False)
    session_id = Column(Uuid, nullable=False, index=True)
    visit_id = Column(Uuid, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    # --- Page ---
    page_title = Column(String(500), nullable=True)
    hostname = Column(String(100), nullable=True)
    url_path = Column(String(500), nullable=True)
    url_query = Column(String(500), nullable=True)

    # --- Referrer ---
    referrer_path = Column(String(500), nullable=True)
    referrer_query = Column(String(500), nullable=True)
    referrer_domain = Column(String(500), nullable=True)

    # --- Classification ---
    event_name = Column(String(50), nullable=True)
    tag = Column(String(50), nullable=True)
    event_type = Column(SmallInteger, nullable=False, default=EVENT_TYPE_PAGEVIEW)

    # --- Engagement ---
    scroll_depth = Column(SmallInteger, nullable=True)     # 0-100
    engagement_time = Column(Integer, nullable=True)       # milliseconds
    props = Column(JSONType, nullable=True)

    # --- Campaign attribution ---
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)

    # Set by goal-completion logic in the analytics layer, never by ingestion
    goal_id = Column(Uuid, nullable=True)

    __table_args__ = (
        Index("ix_website_event_website_created", "website_id", "created_at"),
        Index("ix_website_event_visit", "visit_id"),
    )


class IPMetadata(Base):
    """Rolling per-IP counters and sticky bot classification."""
    __tablename__ = "ip_metadata"

    ip = Column(String(45), primary_key=True)
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)
    total_requests = Column(Integer, nullable=False, default=0)
    requests_last_hour = Column(Integer, nullable=False, default=0)
    requests_last_minute = Column(Integer, nullable=False, default=0)
    max_requests_per_minute = Column(Integer, nullable=False, default=0)
    is_bot = Column(Boolean, nullable=False, default=False)
    bot_type = Column(String(50), nullable=True)
    confidence = Column(SmallInteger, nullable=False, default=0)   # 0-100
    detection_reason = Column(Text, nullable=True)
    unique_user_agents = Column(Integer, nullable=False, default=0)
    user_agent_sample = Column(JSONType, nullable=False, default=list)  # max 5 distinct
    country = Column(String(2), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class EventIdempotency(Base):
    """
    Duplicate-submission ledger. One PostgreSQL partition per calendar day
    (event_idempotency_YYYY_MM_DD); old partitions are dropped, not deleted from.
    """
    __tablename__ = "event_idempotency"

    event_id = Column(Uuid, primary_key=True)
    website_id = Column(Uuid, primary_key=True)
    day = Column(Date, primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_event_idempotency_website_event", "website_id", "event_id"),
        {"postgresql_partition_by": "RANGE (day)"},
    )


class RateLimitCounter(Base):
    """Fixed one-minute windows for API ingestion limits."""
    __tablename__ = "rate_limit_counters"

    bucket_key = Column(String(64), primary_key=True)   # "key:<key_id>" or "website:<website_id>"
    window_start = Column(DateTime(timezone=True), primary_key=True)
    hits = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value
