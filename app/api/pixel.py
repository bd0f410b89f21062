"""
Tracking pixel for pages that can't run the tracker script (emails, AMP, noscript).

GET /p/{website_id}.gif?url=...&referrer=...&title=...&name=...&utm_source=...

Always answers with the same 1x1 transparent GIF. Whatever happens in the
pipeline is logged and never shown to whoever loaded the image.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.events import UTM_FIELDS
from app.core.ingestion import TYPE_EVENT, process_beacon, with_deadline
from app.models.database import get_db
from app.models.schemas import BeaconPayload, BeaconRequest

import structlog

logger = structlog.get_logger()
router = APIRouter(tags=["pixel"])

# 1x1 transparent GIF (42 bytes)
PIXEL_GIF = (
    b"\x47\x49\x46\x38\x39\x61\x01\x00\x01\x00\x80\x00\x00"
    b"\xff\xff\xff\x00\x00\x00\x21\xf9\x04\x01\x00\x00\x00"
    b"\x00\x2c\x00\x00\x00\x00\x01\x00\x01\x00\x00\x02\x02"
    b"\x44\x01\x00"
)

PIXEL_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
    "Access-Control-Allow-Origin": "*",
}


def _pixel() -> Response:
    return Response(content=PIXEL_GIF, media_type="image/gif", headers=PIXEL_HEADERS)


def _primary_language(accept_language: str | None) -> str | None:
    if not accept_language:
        return None
    first = accept_language.split(",")[0].split(";")[0].strip()
    return first or None


def beacon_from_query(website_id: str, request: Request) -> BeaconRequest:
    q = request.query_params
    referer = request.headers.get("referer")
    fields = {
        "website": website_id,
        "url": q.get("url") or referer,
        "referrer": q.get("referrer") or referer,
        "hostname": q.get("hostname"),
        "title": q.get("title"),
        "name": q.get("name"),
        "tag": q.get("tag"),
        "language": _primary_language(request.headers.get("accept-language")),
    }
    for key in UTM_FIELDS:
        fields[key] = q.get(key)
    return BeaconRequest(type=TYPE_EVENT, payload=BeaconPayload(**fields))


@router.get("/p/{website_id}.gif")
async def pixel(
    website_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    try:
        uuid.UUID(website_id)
    except ValueError:
        logger.warning("pixel_invalid_website_id", website_id=website_id)
        return _pixel()

    try:
        result = await with_deadline(process_beacon(request, db, beacon_from_query(website_id, request)))
        logger.debug("pixel_tracked", website_id=website_id, status=result.status_code)
    except HTTPException as exc:
        logger.warning("pixel_tracking_rejected", website_id=website_id,
                       status=exc.status_code, detail=exc.detail)
    except SQLAlchemyError as exc:
        logger.error("pixel_tracking_failed", website_id=website_id, error=str(exc))

    return _pixel()
