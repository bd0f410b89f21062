"""
Browser beacon endpoint.

POST    /api/send  → {type: "event"|"identify", payload: {...}} from the tracker script
OPTIONS /api/send  → CORS preflight

CORS is decided per request: the validated Origin is echoed back, "*" only
when the request carried no Origin/Referer at all, and nothing for a
rejected origin.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.ingestion import process_beacon, with_deadline
from app.core.origin import cors_headers
from app.models.database import get_db
from app.models.schemas import BeaconRequest

router = APIRouter(prefix="/api", tags=["tracking"])


@router.post("/send", status_code=202)
async def send(
    beacon: BeaconRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    result = await with_deadline(process_beacon(request, db, beacon))
    return JSONResponse(
        status_code=result.status_code,
        content=result.body,
        headers=cors_headers(result.allow_origin),
    )


@router.options("/send")
async def send_preflight(request: Request):
    # The website isn't known until the body arrives; the POST does the real check
    origin = request.headers.get("origin") or "*"
    return Response(status_code=204, headers=cors_headers(origin))
