"""
Background maintenance, run from the app lifespan and /admin/maintenance.

  - create idempotency partitions for today .. today + days_ahead
  - drop idempotency partitions older than the retention window
  - purge expired rate-limit windows

Each step gets its own session; a failing step is logged and the rest still run.
"""

import asyncio

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.core import idempotency
from app.middleware.rate_limit import purge_expired
from app.models.database import get_session_maker
from app.models.tables import utcnow

import structlog

logger = structlog.get_logger()


async def run_maintenance(session_maker=None) -> dict:
    settings = get_settings()
    session_maker = session_maker or get_session_maker()
    today = utcnow().date()
    report = {}

    steps = {
        "partitions_created": lambda db: idempotency.ensure_partitions(
            db, today, settings.idempotency_days_ahead),
        "partitions_expired": lambda db: idempotency.drop_expired_partitions(
            db, today, settings.idempotency_retention_days),
        "rate_limit_rows_purged": lambda db: purge_expired(db),
    }

    for name, step in steps.items():
        try:
            async with session_maker() as db:
                result = await step(db)
        except SQLAlchemyError as exc:
            logger.error("maintenance_step_failed", step=name, error=str(exc))
            report[name] = None
            continue
        report[name] = len(result) if isinstance(result, list) else result

    logger.info("maintenance_complete", **report)
    return report


async def maintenance_loop(interval_seconds: int):
    while True:
        try:
            await run_maintenance()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("maintenance_run_failed", error=str(exc))
        await asyncio.sleep(interval_seconds)
