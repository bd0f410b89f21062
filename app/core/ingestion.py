"""
Ingestion orchestrator.

Browser beacon (script or pixel), short-circuiting on the first failure:

  1. website id parses              else 400 invalid_website_id
  2. website exists, not deleted    else 404 website_not_found
  3. own website → dashboard login  else 403 self_tracking_forbidden
  4. origin allowed                 else 403 origin_not_allowed
  5. client ip per proxy_mode (payload ip/userAgent override)
  6. bot?                           → 202 {"beep": "boop"}, nothing written
  7. url ≤ max length               else 400 url_too_long
  8. spam referrer?                 → 202 {"dropped": "spam_referrer"}, nothing written
  9. type is event / identify       else 400 invalid_type
 10. UA parse + GeoIP
 11. session upsert                 failure → 500, committed on its own
 12. event → visit id, event row, realtime notify (fire-and-forget)
     identify → acknowledged, nothing else stored

Server-side events (already authenticated by API key) skip 3, 4 and 6: the
session comes from the caller's visitor_id rather than ip + ua, and a
caller-supplied event_id is accepted at most once.
"""

import asyncio
import datetime
import uuid
from dataclasses import dataclass, field

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core import idempotency
from app.core.background import fire_and_forget
from app.core.bot_detection import classify_request
from app.core.client_ip import resolve_client_ip
from app.core.errors import BeaconRejected
from app.core.events import EventDraft, UTM_FIELDS, build_event_row, save_event, save_event_once
from app.core.geoip import lookup
from app.core.identity import session_id_for, visit_id_for, visitor_session_id_for
from app.core.origin import validate_origin
from app.core.realtime import get_hub
from app.core.referrer import is_spam_referrer, url_path
from app.core.sessions import upsert_session
from app.core.user_agent import parse_user_agent
from app.middleware.session_auth import has_valid_session
from app.models.schemas import BeaconRequest, IngestContext, IngestEvent
from app.models.tables import Website, utcnow

import structlog

logger = structlog.get_logger()

TYPE_EVENT = "event"
TYPE_IDENTIFY = "identify"
PAGE_VIEW = "page_view"

BOT_ACK = {"beep": "boop", "bot_detected": True}
SPAM_ACK = {"dropped": "spam_referrer"}


@dataclass
class BeaconResult:
    status_code: int
    body: dict = field(default_factory=dict)
    allow_origin: str | None = None


def _clip(value: str | None, length: int) -> str | None:
    return value[:length] if value else value


def event_time(timestamp: int | None, now: datetime.datetime) -> datetime.datetime:
    """Payload unix timestamp, or now when absent or unusable."""
    if timestamp is None:
        return now
    try:
        return datetime.datetime.fromtimestamp(timestamp, datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return now


async def with_deadline(coro, seconds: float | None = None):
    """Run one beacon's storage work under the configured deadline."""
    seconds = seconds if seconds is not None else get_settings().beacon_deadline_seconds
    try:
        return await asyncio.wait_for(coro, timeout=seconds)
    except asyncio.TimeoutError:
        logger.error("beacon_deadline_exceeded", deadline_seconds=seconds)
        raise BeaconRejected(500, "deadline_exceeded", "Request did not complete in time")


async def load_website(db: AsyncSession, raw_website_id) -> Website:
    """The website, detached from `db`.

    Ingestion only reads it, and a rollback later in the request (bot
    classifier, ledger) must not expire it.
    """
    try:
        website_id = uuid.UUID(str(raw_website_id))
    except ValueError:
        raise BeaconRejected(400, "invalid_website_id", "Website id is not a valid UUID")

    website = await db.get(Website, website_id)
    if website is None or not website.is_active:
        raise BeaconRejected(404, "website_not_found", "Website not found")
    db.expunge(website)
    return website


def is_self_website(website: Website) -> bool:
    self_id = get_settings().self_website_id.strip().lower()
    return bool(self_id) and str(website.website_id) == self_id


async def _write_session(db: AsyncSession, website: Website, session_id: uuid.UUID, **columns):
    try:
        await upsert_session(db, session_id=session_id, website_id=website.website_id, **columns)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(
            "session_write_failed",
            website_id=str(website.website_id),
            session_id=str(session_id),
            page=columns.get("page"),
            error=str(exc),
        )
        raise BeaconRejected(500, "session_write_failed", "Could not record session")


def _notify_realtime(row: dict):
    event = {
        "event_id": str(row["event_id"]),
        "session_id": str(row["session_id"]),
        "visit_id": str(row["visit_id"]),
        "url_path": row["url_path"],
        "event_type": row["event_type"],
        "event_name": row["event_name"],
        "created_at": row["created_at"].isoformat(),
    }
    fire_and_forget(
        get_hub().notify(row["website_id"], row["session_id"], event),
        "realtime_notify",
    )


# ---------------------------------------------------------------------------
# Browser beacons
# ---------------------------------------------------------------------------

async def process_beacon(request: Request, db: AsyncSession, beacon: BeaconRequest) -> BeaconResult:
    settings = get_settings()
    payload = beacon.payload

    website = await load_website(db, payload.website)
    website_id = str(website.website_id)
    peer_ip = request.client.host if request.client else None

    if is_self_website(website) and not await has_valid_session(request, db):
        logger.warning("self_tracking_forbidden", website_id=website_id, ip=peer_ip)
        raise BeaconRejected(403, "self_tracking_forbidden", "Login required to track this website")

    allow_origin = validate_origin(request, website, ip=peer_ip)

    ip = payload.ip or resolve_client_ip(request, website.proxy_mode)
    user_agent = payload.user_agent or request.headers.get("user-agent", "")
    geo = lookup(ip)

    if await classify_request(db, ip, user_agent, geo.country):
        logger.info("bot_beacon_dropped", website_id=website_id, ip=ip)
        return BeaconResult(202, dict(BOT_ACK), allow_origin)

    if payload.url and len(payload.url) > settings.max_url_length:
        raise BeaconRejected(
            400, "url_too_long",
            f"url exceeds maximum length of {settings.max_url_length} characters",
        )

    if is_spam_referrer(payload.referrer):
        logger.info("spam_referrer_dropped", website_id=website_id, referrer=payload.referrer)
        return BeaconResult(202, dict(SPAM_ACK), allow_origin)

    if beacon.type not in (TYPE_EVENT, TYPE_IDENTIFY):
        raise BeaconRejected(400, "invalid_type", f"Unknown beacon type: {beacon.type}")

    client = parse_user_agent(user_agent)
    created_at = event_time(payload.timestamp, utcnow())
    session_id = session_id_for(website.website_id, ip, user_agent, created_at)

    await _write_session(
        db, website, session_id,
        client=client,
        geo=geo,
        screen=_clip(payload.screen, 11),
        language=_clip(payload.language, 35),
        distinct_id=_clip(payload.distinct_id, 50),
        page=_clip(url_path(payload.url), 500),
    )

    if beacon.type == TYPE_IDENTIFY:
        # Profile merging is not part of ingestion; the session is enough here
        logger.info("identify_received", website_id=website_id, session_id=str(session_id))
        return BeaconResult(202, {"sessionId": str(session_id)}, allow_origin)

    visit_id = visit_id_for(session_id, created_at)
    row = build_event_row(EventDraft(
        event_id=uuid.uuid4(),
        website_id=website.website_id,
        session_id=session_id,
        visit_id=visit_id,
        created_at=created_at,
        url=payload.url,
        hostname=payload.hostname,
        title=payload.title,
        referrer=payload.referrer,
        name=payload.name,
        tag=payload.tag,
        scroll_depth=payload.scroll_depth,
        engagement_time=payload.engagement_time,
        data=payload.data,
        props=payload.props,
        utm={key: getattr(payload, key) for key in UTM_FIELDS},
    ))

    try:
        await save_event(db, row)
    except SQLAlchemyError:
        raise BeaconRejected(500, "event_write_failed", "Could not record event")

    _notify_realtime(row)
    return BeaconResult(
        202,
        {"sessionId": str(session_id), "visitId": str(visit_id)},
        allow_origin,
    )


# ---------------------------------------------------------------------------
# Server-side events
# ---------------------------------------------------------------------------

async def ingest_server_event(db: AsyncSession, website: Website, event: IngestEvent) -> dict:
    """One validated server-side event. Returns its result entry."""
    ctx = event.context or IngestContext()
    event_id = event.event_id or uuid.uuid4()
    result = {"event_id": str(event_id)}

    if is_spam_referrer(event.referrer):
        logger.info("spam_referrer_dropped", website_id=str(website.website_id), referrer=event.referrer)
        return {"status": "dropped", **result}

    if event.event_id is not None and await idempotency.exists(db, event_id, website.website_id):
        return {"status": "duplicate", **result}

    created_at = event_time(event.timestamp, utcnow())
    visitor_id = event.visitor_id.strip()
    session_id = visitor_session_id_for(website.website_id, visitor_id, created_at)

    await _write_session(
        db, website, session_id,
        client=parse_user_agent(ctx.user_agent),
        geo=lookup(ctx.ip),
        screen=_clip(ctx.screen, 11),
        language=_clip(ctx.locale, 35),
        distinct_id=_clip(visitor_id, 50),
        page=_clip(url_path(event.url), 500),
    )

    name = event.event.strip()
    visit_id = visit_id_for(session_id, created_at)
    row = build_event_row(EventDraft(
        event_id=event_id,
        website_id=website.website_id,
        session_id=session_id,
        visit_id=visit_id,
        created_at=created_at,
        url=event.url,
        hostname=ctx.hostname,
        title=event.title,
        referrer=event.referrer,
        name=None if name == PAGE_VIEW else name,
        props=event.properties,
        utm={key: getattr(event, key) for key in UTM_FIELDS},
    ))

    try:
        if event.event_id is not None:
            accepted = await save_event_once(db, row)
        else:
            await save_event(db, row)
            accepted = True
    except SQLAlchemyError:
        raise BeaconRejected(500, "event_write_failed", "Could not record event")

    if not accepted:
        return {"status": "duplicate", **result}

    _notify_realtime(row)
    return {
        "status": "accepted",
        **result,
        "session_id": str(session_id),
        "visit_id": str(visit_id),
    }
