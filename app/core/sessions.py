"""
Session attribution.

One statement per beacon:

    INSERT INTO session (...) VALUES (..., entry_page=:page, exit_page=:page)
    ON CONFLICT (session_id) DO UPDATE SET exit_page = EXCLUDED.entry_page

First sight stores the page as both entry and exit. Every later beacon only
moves exit_page; entry_page and the enrichment columns keep their first value.
"""

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.geoip import GeoLocation
from app.core.user_agent import ClientInfo
from app.models.database import upsert
from app.models.tables import VisitorSession


async def upsert_session(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    website_id: uuid.UUID,
    client: ClientInfo,
    geo: GeoLocation,
    screen: str | None = None,
    language: str | None = None,
    distinct_id: str | None = None,
    page: str | None = None,
):
    """Insert-or-move-exit. Raises SQLAlchemyError for the caller to handle."""
    stmt = upsert(db, VisitorSession).values(
        session_id=session_id,
        website_id=website_id,
        browser=client.browser,
        os=client.os,
        device=client.device,
        screen=screen,
        language=language,
        country=geo.country,
        region=geo.region,
        city=geo.city,
        distinct_id=distinct_id,
        entry_page=page,
        exit_page=page,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[VisitorSession.session_id],
        set_={"exit_page": stmt.excluded.entry_page},
    )
    await db.execute(stmt)
