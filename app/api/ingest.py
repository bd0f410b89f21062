"""
Server-side ingestion API — events sent from the customer's backend.

POST /api/ingest        → one event
POST /api/ingest/batch  → {events: [...]} with 1-100 entries

Security:
  - Requires an API key with the "ingest" scope (Bearer or X-API-Key)
  - The key's website is the only website it can write to
  - Rate limited per key and per website, one unit per event
  - A caller-supplied event_id is accepted at most once; retries answer "duplicate"
"""

from fastapi import APIRouter, Depends
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.ingestion import ingest_server_event, load_website, with_deadline
from app.core.properties import validate_ingest_event
from app.middleware.auth import SCOPE_INGEST, APIKeyContext, require_api_key
from app.middleware.rate_limit import rate_limit_ingest
from app.models.database import get_db
from app.models.schemas import IngestBatch, IngestEvent

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/ingest", tags=["ingest"])


def _raise_invalid(problems: list[tuple[tuple, str]]):
    raise RequestValidationError([
        {"loc": ("body", *loc), "msg": msg, "type": "value_error"}
        for loc, msg in problems
    ])


@router.post("", status_code=202)
async def ingest_event(
    event: IngestEvent,
    auth: APIKeyContext = Depends(require_api_key(SCOPE_INGEST)),
    db: AsyncSession = Depends(get_db),
):
    errors = validate_ingest_event(event)
    if errors:
        _raise_invalid([((), msg) for msg in errors])

    website = await load_website(db, auth.website_id)
    await rate_limit_ingest(db, auth, website)

    result = await with_deadline(ingest_server_event(db, website, event))
    logger.info(
        "ingest_event",
        website_id=str(website.website_id),
        key_prefix=auth.key_prefix,
        event_name=event.event,
        status=result["status"],
    )
    return result


@router.post("/batch", status_code=202)
async def ingest_batch(
    batch: IngestBatch,
    auth: APIKeyContext = Depends(require_api_key(SCOPE_INGEST)),
    db: AsyncSession = Depends(get_db),
):
    # All-or-nothing: one bad entry rejects the whole batch
    problems = [
        (("events", index), msg)
        for index, event in enumerate(batch.events)
        for msg in validate_ingest_event(event)
    ]
    if problems:
        _raise_invalid(problems)

    website = await load_website(db, auth.website_id)
    await rate_limit_ingest(db, auth, website, cost=len(batch.events))

    results = []
    for event in batch.events:
        results.append(await with_deadline(ingest_server_event(db, website, event)))

    summary = {
        "accepted": sum(1 for r in results if r["status"] == "accepted"),
        "duplicates": sum(1 for r in results if r["status"] == "duplicate"),
        "dropped": sum(1 for r in results if r["status"] == "dropped"),
    }
    logger.info(
        "ingest_batch",
        website_id=str(website.website_id),
        key_prefix=auth.key_prefix,
        size=len(batch.events),
        **summary,
    )
    return {**summary, "results": results}
