"""
Idempotency ledger — which (event_id, website_id) pairs were already accepted.

Rows land in the partition for their calendar day. On PostgreSQL each day is
its own table (event_idempotency_YYYY_MM_DD): maintenance creates the next
days ahead of time and expires old days with DROP TABLE, so cleanup cost
scales with the number of days, not the number of rows. Other dialects get
the same retention through a plain DELETE.
"""

import datetime
import uuid

from sqlalchemy import delete, exists as sql_exists, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import dialect_name, upsert
from app.models.tables import EventIdempotency, utcnow

import structlog

logger = structlog.get_logger()

PARENT_TABLE = EventIdempotency.__tablename__


def partition_name(day: datetime.date) -> str:
    return f"{PARENT_TABLE}_{day:%Y_%m_%d}"


def partition_day(name: str) -> datetime.date | None:
    """Inverse of partition_name; None for tables that don't follow the scheme."""
    prefix = PARENT_TABLE + "_"
    if not name.startswith(prefix):
        return None
    try:
        return datetime.datetime.strptime(name[len(prefix):], "%Y_%m_%d").date()
    except ValueError:
        return None


async def exists(db: AsyncSession, event_id: uuid.UUID, website_id: uuid.UUID) -> bool:
    stmt = select(
        sql_exists().where(
            EventIdempotency.event_id == event_id,
            EventIdempotency.website_id == website_id,
        )
    )
    return bool((await db.execute(stmt)).scalar())


async def register(
    db: AsyncSession,
    event_id: uuid.UUID,
    website_id: uuid.UUID,
    now: datetime.datetime | None = None,
) -> bool:
    """Record the pair. False if it was already there (no-op on conflict)."""
    now = now or utcnow()
    stmt = (
        upsert(db, EventIdempotency)
        .values(event_id=event_id, website_id=website_id, day=now.date(), created_at=now)
        .on_conflict_do_nothing()
        .returning(EventIdempotency.event_id)
    )
    return (await db.execute(stmt)).scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# Partition maintenance (never on the request path)
# ---------------------------------------------------------------------------

async def ensure_partitions(
    db: AsyncSession,
    today: datetime.date,
    days_ahead: int,
) -> list[str]:
    """Create partitions for today .. today + days_ahead. PostgreSQL only."""
    if dialect_name(db) != "postgresql":
        return []

    created = []
    for offset in range(days_ahead + 1):
        day = today + datetime.timedelta(days=offset)
        name = partition_name(day)
        await db.execute(text(
            f'CREATE TABLE IF NOT EXISTS "{name}" PARTITION OF "{PARENT_TABLE}" '
            f"FOR VALUES FROM ('{day.isoformat()}') "
            f"TO ('{(day + datetime.timedelta(days=1)).isoformat()}')"
        ))
        created.append(name)
    await db.commit()
    return created


async def drop_expired_partitions(
    db: AsyncSession,
    today: datetime.date,
    retention_days: int,
) -> int:
    """Expire ledger days older than the retention window.

    Returns dropped partitions on PostgreSQL, deleted rows elsewhere.
    """
    cutoff = today - datetime.timedelta(days=retention_days)

    if dialect_name(db) != "postgresql":
        result = await db.execute(delete(EventIdempotency).where(EventIdempotency.day < cutoff))
        await db.commit()
        return result.rowcount or 0

    rows = await db.execute(text(
        "SELECT c.relname FROM pg_inherits i "
        "JOIN pg_class c ON c.oid = i.inhrelid "
        "JOIN pg_class p ON p.oid = i.inhparent "
        "WHERE p.relname = :parent"
    ), {"parent": PARENT_TABLE})

    dropped = 0
    for (name,) in rows.all():
        day = partition_day(name)
        if day is None or day >= cutoff:
            continue
        await db.execute(text(f'DROP TABLE IF EXISTS "{name}"'))
        logger.info("idempotency_partition_dropped", partition=name)
        dropped += 1
    await db.commit()
    return dropped
