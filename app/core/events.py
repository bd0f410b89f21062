"""
Event writer.

Turns an enriched beacon into one website_event row:
  - event_type   → 2 when a non-blank event name is present, else 1
  - url          → url_path, url_query (None when empty), hostname
  - referrer     → referrer_path, referrer_query, referrer_domain
  - data + props → one props object ("props" wins on key collision)
  - scroll_depth outside 0..100 and negative engagement_time are dropped

Browser beacons derive their event_id server-side, so the ledger entry is
best-effort there. Server-side callers supply their own event_id and go
through save_event_once(), which accepts each id at most once.
"""

import datetime
import uuid
from dataclasses import dataclass, field

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import idempotency
from app.core.referrer import parse_page_url, parse_referrer
from app.models.tables import EVENT_TYPE_CUSTOM, EVENT_TYPE_PAGEVIEW, WebsiteEvent, utcnow

import structlog

logger = structlog.get_logger()

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


@dataclass
class EventDraft:
    """Everything the writer needs, already attributed to a session and visit."""
    event_id: uuid.UUID
    website_id: uuid.UUID
    session_id: uuid.UUID
    visit_id: uuid.UUID
    created_at: datetime.datetime
    url: str | None = None
    hostname: str | None = None
    title: str | None = None
    referrer: str | None = None
    name: str | None = None
    tag: str | None = None
    scroll_depth: int | None = None
    engagement_time: int | None = None
    data: dict | None = None
    props: dict | None = None
    utm: dict = field(default_factory=dict)


def event_type_for(name: str | None) -> int:
    return EVENT_TYPE_CUSTOM if name and name.strip() else EVENT_TYPE_PAGEVIEW


def merge_properties(data: dict | None, props: dict | None) -> dict | None:
    merged = {}
    if isinstance(data, dict):
        merged.update(data)
    if isinstance(props, dict):
        merged.update(props)
    return merged or None


def valid_scroll_depth(value: int | None) -> int | None:
    if value is None or not 0 <= value <= 100:
        return None
    return value


def valid_engagement_time(value: int | None) -> int | None:
    if value is None or value < 0:
        return None
    return value


def _clip(value: str | None, length: int) -> str | None:
    if value is None:
        return None
    return value[:length]


def build_event_row(draft: EventDraft) -> dict:
    """The 23-column website_event insert for one beacon."""
    page = parse_page_url(draft.url, draft.hostname)
    ref = parse_referrer(draft.referrer)
    name = draft.name.strip() if draft.name and draft.name.strip() else None

    row = {
        "event_id": draft.event_id,
        "website_id": draft.website_id,
        "session_id": draft.session_id,
        "visit_id": draft.visit_id,
        "created_at": draft.created_at,
        "page_title": _clip(draft.title, 500),
        "hostname": _clip(page.hostname, 100),
        "url_path": _clip(page.path, 500),
        "url_query": _clip(page.query, 500),
        "referrer_path": _clip(ref.path, 500),
        "referrer_query": _clip(ref.query, 500),
        "referrer_domain": _clip(ref.domain, 500),
        "event_name": _clip(name, 50),
        "tag": _clip(draft.tag, 50),
        "event_type": event_type_for(name),
        "scroll_depth": valid_scroll_depth(draft.scroll_depth),
        "engagement_time": valid_engagement_time(draft.engagement_time),
        "props": merge_properties(draft.data, draft.props),
    }
    for key in UTM_FIELDS:
        row[key] = _clip(draft.utm.get(key), 255)
    return row


async def save_event(db: AsyncSession, row: dict):
    """Insert the event, then register it in the ledger (best-effort)."""
    try:
        await db.execute(insert(WebsiteEvent).values(**row))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(
            "event_write_failed",
            event_id=str(row["event_id"]),
            website_id=str(row["website_id"]),
            session_id=str(row["session_id"]),
            url_path=row.get("url_path"),
            error=str(exc),
        )
        raise

    try:
        await idempotency.register(db, row["event_id"], row["website_id"], utcnow())
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning(
            "idempotency_register_failed",
            event_id=str(row["event_id"]),
            website_id=str(row["website_id"]),
            error=str(exc),
        )


async def save_event_once(db: AsyncSession, row: dict) -> bool:
    """Insert an event whose id the caller chose. False = already accepted.

    The ledger entry and the event row commit together, so a retry either
    sees both or neither.
    """
    event_id, website_id = row["event_id"], row["website_id"]

    if await idempotency.exists(db, event_id, website_id):
        return False

    try:
        if not await idempotency.register(db, event_id, website_id, utcnow()):
            await db.rollback()
            return False
        await db.execute(insert(WebsiteEvent).values(**row))
        await db.commit()
    except IntegrityError:
        # Event row outlived its ledger entry
        await db.rollback()
        logger.info("duplicate_event_id", event_id=str(event_id), website_id=str(website_id))
        return False
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(
            "event_write_failed",
            event_id=str(event_id),
            website_id=str(website_id),
            session_id=str(row["session_id"]),
            error=str(exc),
        )
        raise
    return True
