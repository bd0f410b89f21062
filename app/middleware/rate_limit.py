"""
Rate limiter — fixed one-minute windows in the database.

Limits (per minute):
  - Per API key:  api_keys.rate_limit_per_minute
  - Per website:  website.api_rate_limit_per_minute, summed over all its keys

Each request bumps its window with one statement:

    INSERT INTO rate_limit_counters (bucket_key, window_start, hits, expires_at)
    VALUES (...) ON CONFLICT (bucket_key, window_start)
    DO UPDATE SET hits = rate_limit_counters.hits + EXCLUDED.hits
    RETURNING hits

so any number of workers can share a counter without losing hits.
"""

import datetime

from fastapi import HTTPException
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.middleware.auth import APIKeyContext
from app.models.database import upsert
from app.models.tables import RateLimitCounter, Website, utcnow

import structlog

logger = structlog.get_logger()

WINDOW = datetime.timedelta(minutes=1)


def window_start(now: datetime.datetime) -> datetime.datetime:
    return now.replace(second=0, microsecond=0)


async def consume(
    db: AsyncSession,
    bucket_key: str,
    cost: int = 1,
    now: datetime.datetime | None = None,
) -> int:
    """Add `cost` hits to the current window and return the new total."""
    now = now or utcnow()
    start = window_start(now)
    stmt = upsert(db, RateLimitCounter).values(
        bucket_key=bucket_key,
        window_start=start,
        hits=cost,
        expires_at=start + 2 * WINDOW,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[RateLimitCounter.bucket_key, RateLimitCounter.window_start],
        set_={"hits": RateLimitCounter.hits + stmt.excluded.hits},
    ).returning(RateLimitCounter.hits)
    hits = (await db.execute(stmt)).scalar_one()
    await db.commit()
    return hits


async def check_rate_limit(
    db: AsyncSession,
    bucket_key: str,
    limit: int,
    cost: int = 1,
    now: datetime.datetime | None = None,
) -> int:
    now = now or utcnow()
    hits = await consume(db, bucket_key, cost, now)
    if hits > limit:
        retry_after = int((window_start(now) + WINDOW - now).total_seconds()) + 1
        logger.warning("rate_limit_exceeded", bucket=bucket_key, limit=limit, hits=hits)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Slow down.",
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return limit - hits


async def rate_limit_ingest(
    db: AsyncSession,
    auth: APIKeyContext,
    website: Website,
    cost: int = 1,
) -> int:
    """Charge `cost` events to both the key and the website. Returns the key's remaining budget."""
    settings = get_settings()
    remaining = await check_rate_limit(
        db,
        f"key:{auth.key_id}",
        auth.rate_limit_per_minute or settings.api_key_default_rate_limit,
        cost,
    )
    await check_rate_limit(
        db,
        f"website:{website.website_id}",
        website.api_rate_limit_per_minute or settings.website_default_rate_limit,
        cost,
    )
    return remaining


async def purge_expired(db: AsyncSession, now: datetime.datetime | None = None) -> int:
    result = await db.execute(
        delete(RateLimitCounter).where(RateLimitCounter.expires_at < (now or utcnow()))
    )
    await db.commit()
    return result.rowcount or 0
