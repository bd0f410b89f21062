"""
Admin endpoints — API key lifecycle and on-demand maintenance.

Access:
  - X-Setup-Key header matching TM_ADMIN_SETUP_KEY (disabled when unset), or
  - an API key with the "admin" scope, for its own website only
"""

import datetime
import hmac
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.ingestion import load_website
from app.core.maintenance import run_maintenance
from app.middleware.auth import (
    SCOPE_ADMIN,
    SCOPE_INGEST,
    VALID_SCOPES,
    APIKey,
    authenticate_api_key,
    extract_api_key,
    generate_api_key,
)
from app.models.database import get_db
from app.models.tables import utcnow

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"])


class CreateKeyRequest(BaseModel):
    website_id: UUID
    name: str | None = Field(default=None, max_length=100)
    scopes: list[str] = Field(default_factory=lambda: [SCOPE_INGEST], min_length=1)
    rate_limit_per_minute: int | None = Field(default=None, gt=0)
    expires_at: datetime.datetime | None = None
    created_by: UUID | None = None


def _setup_key_ok(request: Request) -> bool:
    expected = get_settings().admin_setup_key
    supplied = request.headers.get("x-setup-key")
    if not expected or not supplied:
        return False
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        logger.warning("admin_setup_key_invalid", ip=request.client.host if request.client else None)
        raise HTTPException(status_code=403, detail="Invalid setup key")
    return True


async def authorize_admin(request: Request, db: AsyncSession, website_id: UUID | None) -> str:
    """Who is acting: "setup_key" or the admin key's prefix."""
    if _setup_key_ok(request):
        return "setup_key"

    if website_id is None:
        raise HTTPException(status_code=403, detail="Setup key required")

    raw_key = extract_api_key(request.headers.get("authorization"), request.headers.get("x-api-key"))
    ip = request.client.host if request.client else None
    api_key = await authenticate_api_key(raw_key, SCOPE_ADMIN, db, ip=ip)
    if api_key.website_id != website_id:
        logger.warning(
            "admin_cross_website_denied",
            key_prefix=api_key.key_prefix,
            website_id=str(website_id),
            ip=ip,
        )
        raise HTTPException(status_code=403, detail="API key does not have access to this website")
    return api_key.key_prefix


def _serialize(key: APIKey) -> dict:
    return {
        "key_id": str(key.key_id),
        "website_id": str(key.website_id),
        "key_prefix": key.key_prefix,
        "name": key.name,
        "scopes": list(key.scopes or []),
        "rate_limit_per_minute": key.rate_limit_per_minute,
        "created_at": key.created_at.isoformat() if key.created_at else None,
        "last_used_at": key.last_used_at.isoformat() if key.last_used_at else None,
        "revoked_at": key.revoked_at.isoformat() if key.revoked_at else None,
        "expires_at": key.expires_at.isoformat() if key.expires_at else None,
    }


@router.post("/api-keys", status_code=201)
async def create_api_key(
    body: CreateKeyRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    actor = await authorize_admin(request, db, body.website_id)

    unknown = sorted(set(body.scopes) - set(VALID_SCOPES))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown scopes: {', '.join(unknown)}")

    website = await load_website(db, body.website_id)

    raw_key, key_hash, key_prefix = generate_api_key()
    api_key = APIKey(
        website_id=website.website_id,
        created_by=body.created_by,
        key_hash=key_hash,
        key_prefix=key_prefix,
        name=body.name,
        scopes=sorted(set(body.scopes)),
        rate_limit_per_minute=body.rate_limit_per_minute or get_settings().api_key_default_rate_limit,
        created_at=utcnow(),
        expires_at=body.expires_at,
    )
    db.add(api_key)
    await db.commit()

    logger.info(
        "api_key_created",
        website_id=str(website.website_id),
        key_prefix=key_prefix,
        scopes=api_key.scopes,
        actor=actor,
    )
    return {
        **_serialize(api_key),
        "key": raw_key,
        "message": "SAVE THIS KEY. It won't be shown again.",
    }


@router.get("/websites/{website_id}/api-keys")
async def list_api_keys(
    website_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    await authorize_admin(request, db, website_id)

    stmt = select(APIKey).where(APIKey.website_id == website_id).order_by(APIKey.created_at)
    keys = (await db.execute(stmt)).scalars().all()
    return {"website_id": str(website_id), "api_keys": [_serialize(k) for k in keys]}


@router.post("/api-keys/{key_id}/revoke")
async def revoke_api_key(
    key_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    api_key = await db.get(APIKey, key_id)
    if api_key is None or api_key.revoked_at is not None:
        raise HTTPException(status_code=404, detail="API key not found")

    actor = await authorize_admin(request, db, api_key.website_id)

    api_key.revoked_at = utcnow()
    await db.commit()

    logger.info(
        "api_key_revoked",
        website_id=str(api_key.website_id),
        key_prefix=api_key.key_prefix,
        actor=actor,
    )
    return _serialize(api_key)


@router.post("/maintenance")
async def maintenance(request: Request, db: AsyncSession = Depends(get_db)):
    await authorize_admin(request, db, None)
    return await run_maintenance()
