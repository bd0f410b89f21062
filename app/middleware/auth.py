"""
API key authentication for server-side ingestion.

Keys look like tm_live_<64 hex>. Callers send them as
  Authorization: Bearer tm_live_...   (wins when both are present)
  X-API-Key: tm_live_...

Key rules:
  - Keys are hashed (SHA-256) in the database; we never store plaintext
  - The plaintext is shown exactly once, at creation
  - A key is valid iff not revoked and not past expires_at
  - Each key is bound to one website and carries scopes (ingest, stats, admin)

Failure outcomes:
  401 Missing API key             → nothing sent
  401 Invalid API key format      → wrong prefix, rejected before any lookup
  401 Invalid API key             → no such hash
  401 API key revoked or expired
  403 API key does not have X permission → known caller, not entitled
"""

import datetime
import hashlib
import secrets
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from fastapi import BackgroundTasks, Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy import Column, DateTime, Integer, String, Uuid, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import get_db, get_session_maker
from app.models.tables import Base, JSONType, as_utc, utcnow

import structlog

logger = structlog.get_logger()

API_KEY_PREFIX = "tm_live_"
KEY_PREFIX_LENGTH = 16
SCOPE_INGEST = "ingest"
SCOPE_STATS = "stats"
SCOPE_ADMIN = "admin"
VALID_SCOPES = (SCOPE_INGEST, SCOPE_STATS, SCOPE_ADMIN)


# ─── Database model ────────────────────────────────────────────────

class APIKey(Base):
    """Hashed API keys scoped to a website."""
    __tablename__ = "api_keys"

    key_id = Column(Uuid, primary_key=True, default=uuid4)
    website_id = Column(Uuid, nullable=False, index=True)
    created_by = Column(Uuid, nullable=True)
    key_hash = Column(String(64), nullable=False, unique=True, index=True)  # SHA-256 hex
    key_prefix = Column(String(KEY_PREFIX_LENGTH), nullable=False)  # "tm_live_3f9a1c2e" for display
    name = Column(String(100), nullable=True)  # human label ("Backend", "Staging")
    scopes = Column(JSONType, nullable=False, default=lambda: [SCOPE_INGEST])
    rate_limit_per_minute = Column(Integer, nullable=False, default=1000)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    def is_valid(self, now: datetime.datetime | None = None) -> bool:
        if self.revoked_at is not None:
            return False
        if self.expires_at is None:
            return True
        return as_utc(self.expires_at) > (now or utcnow())

    def has_scope(self, scope: str) -> bool:
        return scope in (self.scopes or [])


# ─── Key generation ────────────────────────────────────────────────

def hash_api_key(raw_key: str) -> str:
    """SHA-256 hash of the raw API key."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key() -> tuple[str, str, str]:
    """Generate a new API key.

    Returns (raw_key, key_hash, key_prefix).
    The raw_key is shown to the user ONCE. We only store the hash.
    """
    raw_key = f"{API_KEY_PREFIX}{secrets.token_hex(32)}"
    return raw_key, hash_api_key(raw_key), raw_key[:KEY_PREFIX_LENGTH]


# ─── Auth dependencies ─────────────────────────────────────────────

authorization_header = APIKeyHeader(name="Authorization", auto_error=False)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class APIKeyContext:
    """Resolved API key for the current request."""
    key_id: UUID
    website_id: UUID
    key_prefix: str
    rate_limit_per_minute: int
    scopes: list[str] = field(default_factory=list)


def extract_api_key(authorization: str | None, x_api_key: str | None) -> str | None:
    if authorization:
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    return None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def touch_last_used(key_id: UUID):
    """Best-effort last_used_at bump, outside the request's session."""
    try:
        async with get_session_maker()() as db:
            await db.execute(
                update(APIKey).where(APIKey.key_id == key_id).values(last_used_at=utcnow())
            )
            await db.commit()
    except SQLAlchemyError as exc:
        logger.warning("api_key_touch_failed", key_id=str(key_id), error=str(exc))


async def authenticate_api_key(
    raw_key: str | None,
    scope: str,
    db: AsyncSession,
    ip: str | None = None,
) -> APIKey:
    if not raw_key:
        logger.warning("api_key_missing", ip=ip)
        raise _unauthorized("Missing API key")

    if not raw_key.startswith(API_KEY_PREFIX):
        logger.warning("api_key_bad_format", ip=ip)
        raise _unauthorized("Invalid API key format")

    stmt = select(APIKey).where(APIKey.key_hash == hash_api_key(raw_key))
    api_key = (await db.execute(stmt)).scalar_one_or_none()

    if api_key is None:
        logger.warning("api_key_invalid", ip=ip, key_prefix=raw_key[:KEY_PREFIX_LENGTH])
        raise _unauthorized("Invalid API key")

    if not api_key.is_valid():
        logger.warning(
            "api_key_revoked_or_expired",
            ip=ip,
            key_prefix=api_key.key_prefix,
            website_id=str(api_key.website_id),
        )
        raise _unauthorized("API key revoked or expired")

    if not api_key.has_scope(scope):
        logger.warning(
            "api_key_missing_scope",
            ip=ip,
            key_prefix=api_key.key_prefix,
            website_id=str(api_key.website_id),
            scope=scope,
        )
        raise HTTPException(status_code=403, detail=f"API key does not have {scope} permission")

    return api_key


def require_api_key(scope: str):
    """Dependency factory: a valid key holding `scope`."""

    async def dependency(
        request: Request,
        background_tasks: BackgroundTasks,
        authorization: str | None = Security(authorization_header),
        x_api_key: str | None = Security(api_key_header),
        db: AsyncSession = Depends(get_db),
    ) -> APIKeyContext:
        ip = request.client.host if request.client else None
        api_key = await authenticate_api_key(
            extract_api_key(authorization, x_api_key), scope, db, ip=ip,
        )
        background_tasks.add_task(touch_last_used, api_key.key_id)
        return APIKeyContext(
            key_id=api_key.key_id,
            website_id=api_key.website_id,
            key_prefix=api_key.key_prefix,
            rate_limit_per_minute=api_key.rate_limit_per_minute,
            scopes=list(api_key.scopes or []),
        )

    return dependency
