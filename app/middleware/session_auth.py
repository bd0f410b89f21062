"""
Dashboard session check.

The dashboard stores an opaque session token in a cookie; the database only
holds its SHA-256. Ingestion consults this for one thing: beacons for the
instance's own website are only accepted from a logged-in dashboard user.
"""

import hashlib

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.tables import UserSession, as_utc, utcnow


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def has_valid_session(request: Request, db: AsyncSession) -> bool:
    token = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        return False

    stmt = select(UserSession).where(UserSession.token_hash == hash_session_token(token))
    session = (await db.execute(stmt)).scalar_one_or_none()
    if session is None:
        return False
    return as_utc(session.expires_at) > utcnow()
