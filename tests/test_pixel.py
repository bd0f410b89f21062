"""Tests for GET /p/{website_id}.gif: always a GIF, tracking is best-effort."""

import uuid
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import select

from app.api.pixel import PIXEL_GIF, router
from app.models.database import get_db
from app.models.tables import VisitorSession, WebsiteEvent
from conftest import count_rows


def _assert_gif(resp):
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/gif"
    assert resp.content == PIXEL_GIF
    assert "no-store" in resp.headers["cache-control"]
    assert resp.headers["access-control-allow-origin"] == "*"


class TestPixelGif:
    def test_gif_is_42_bytes(self):
        assert len(PIXEL_GIF) == 42
        assert PIXEL_GIF.startswith(b"GIF89a")

    def test_invalid_website_id_still_returns_gif(self):
        app = FastAPI()
        app.include_router(router)
        mock_db = AsyncMock()
        app.dependency_overrides[get_db] = lambda: mock_db

        resp = TestClient(app).get("/p/not-a-uuid.gif")
        _assert_gif(resp)
        mock_db.execute.assert_not_called()
        mock_db.get.assert_not_called()


class TestPixelTracking:
    async def test_records_pageview(self, client, db, website):
        resp = await client.get(
            f"/p/{website.website_id}.gif",
            params={
                "url": "https://example.com/newsletter/42",
                "title": "Issue 42",
                "utm_source": "email",
            },
            headers={"Referer": "https://example.com/newsletter/42", "Accept-Language": "de-DE,de;q=0.9"},
        )
        _assert_gif(resp)

        event = (await db.execute(select(WebsiteEvent))).scalars().one()
        assert event.url_path == "/newsletter/42"
        assert event.page_title == "Issue 42"
        assert event.utm_source == "email"
        session = (await db.execute(select(VisitorSession))).scalars().one()
        assert session.language == "de-DE"

    async def test_url_falls_back_to_referer(self, client, db, website):
        resp = await client.get(
            f"/p/{website.website_id}.gif",
            headers={"Referer": "https://example.com/landing"},
        )
        _assert_gif(resp)
        event = (await db.execute(select(WebsiteEvent))).scalars().one()
        assert event.url_path == "/landing"

    async def test_unknown_website_still_gif(self, client, db):
        resp = await client.get(f"/p/{uuid.uuid4()}.gif")
        _assert_gif(resp)
        assert await count_rows(db, VisitorSession) == 0

    async def test_disallowed_referer_still_gif(self, client, db, website):
        resp = await client.get(
            f"/p/{website.website_id}.gif",
            headers={"Referer": "https://elsewhere.test/page"},
        )
        _assert_gif(resp)
        assert await count_rows(db, WebsiteEvent) == 0

    @pytest.mark.parametrize("ua", ["curl/8.4.0", "Mozilla/5.0 (compatible; bingbot/2.0)"])
    async def test_bot_still_gif(self, client, db, website, ua):
        resp = await client.get(f"/p/{website.website_id}.gif", headers={"User-Agent": ua})
        _assert_gif(resp)
        assert await count_rows(db, WebsiteEvent) == 0
