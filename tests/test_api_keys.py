"""Tests for the API key gate and key administration."""

import datetime
import uuid

import pytest
from sqlalchemy import select

from app.middleware.auth import (
    API_KEY_PREFIX,
    APIKey,
    extract_api_key,
    generate_api_key,
    hash_api_key,
)
from app.models.tables import utcnow

SETUP = {"X-Setup-Key": "test-setup-key"}
EVENT = {"event": "signup", "visitor_id": "v1"}


class TestKeyValidity:
    def test_no_expiry_is_valid(self):
        assert APIKey().is_valid() is True

    def test_expired_an_hour_ago(self):
        assert APIKey(expires_at=utcnow() - datetime.timedelta(hours=1)).is_valid() is False

    def test_expires_in_an_hour(self):
        assert APIKey(expires_at=utcnow() + datetime.timedelta(hours=1)).is_valid() is True

    def test_revoked(self):
        assert APIKey(revoked_at=utcnow()).is_valid() is False

    def test_revoked_wins_over_future_expiry(self):
        key = APIKey(revoked_at=utcnow(), expires_at=utcnow() + datetime.timedelta(days=30))
        assert key.is_valid() is False

    def test_naive_expiry_treated_as_utc(self):
        naive = (utcnow() + datetime.timedelta(hours=1)).replace(tzinfo=None)
        assert APIKey(expires_at=naive).is_valid() is True

    def test_scopes(self):
        key = APIKey(scopes=["ingest", "stats"])
        assert key.has_scope("ingest")
        assert not key.has_scope("admin")


class TestKeyGeneration:
    def test_format(self):
        raw, key_hash, prefix = generate_api_key()
        assert raw.startswith(API_KEY_PREFIX)
        assert len(raw) == len(API_KEY_PREFIX) + 64
        assert prefix == raw[:16]
        assert key_hash == hash_api_key(raw)
        assert raw not in key_hash

    def test_unique(self):
        assert generate_api_key()[0] != generate_api_key()[0]


class TestExtraction:
    def test_bearer(self):
        assert extract_api_key("Bearer tm_live_abc", None) == "tm_live_abc"

    def test_x_api_key(self):
        assert extract_api_key(None, "tm_live_abc") == "tm_live_abc"

    def test_authorization_wins(self):
        assert extract_api_key("Bearer tm_live_auth", "tm_live_header") == "tm_live_auth"

    def test_non_bearer_authorization_falls_back(self):
        assert extract_api_key("Basic dXNlcjpwYXNz", "tm_live_header") == "tm_live_header"

    def test_nothing(self):
        assert extract_api_key(None, None) is None
        assert extract_api_key("Bearer ", "") is None


class TestGate:
    async def test_missing_key(self, client):
        resp = await client.post("/api/ingest", json=EVENT)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing API key"
        assert resp.headers["www-authenticate"] == "Bearer"

    async def test_bad_format(self, client):
        resp = await client.post("/api/ingest", json=EVENT, headers={"X-API-Key": "sk_something"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid API key format"

    async def test_unknown_key(self, client, website):
        raw, _, _ = generate_api_key()
        resp = await client.post("/api/ingest", json=EVENT, headers={"X-API-Key": raw})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid API key"

    async def test_revoked_key(self, client, website, make_api_key):
        raw, _ = await make_api_key(website.website_id, revoked_at=utcnow())
        resp = await client.post("/api/ingest", json=EVENT, headers={"X-API-Key": raw})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "API key revoked or expired"

    async def test_expired_key(self, client, website, make_api_key):
        raw, _ = await make_api_key(
            website.website_id, expires_at=utcnow() - datetime.timedelta(hours=1),
        )
        resp = await client.post("/api/ingest", json=EVENT, headers={"X-API-Key": raw})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "API key revoked or expired"

    async def test_missing_scope_is_403(self, client, website, make_api_key):
        raw, _ = await make_api_key(website.website_id, scopes=("stats",))
        resp = await client.post("/api/ingest", json=EVENT, headers={"X-API-Key": raw})
        assert resp.status_code == 403
        assert resp.json()["detail"] == "API key does not have ingest permission"

    async def test_success_touches_last_used(self, client, db, website, make_api_key):
        raw, row = await make_api_key(website.website_id)
        assert row.last_used_at is None

        resp = await client.post("/api/ingest", json=EVENT, headers={"Authorization": f"Bearer {raw}"})
        assert resp.status_code == 202

        stmt = select(APIKey).where(APIKey.key_id == row.key_id).execution_options(populate_existing=True)
        refreshed = (await db.execute(stmt)).scalar_one()
        assert refreshed.last_used_at is not None


class TestAdmin:
    async def test_create_with_setup_key(self, client, db, website):
        resp = await client.post(
            "/admin/api-keys",
            json={"website_id": str(website.website_id), "name": "Backend", "scopes": ["ingest", "stats"]},
            headers=SETUP,
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["key"].startswith(API_KEY_PREFIX)
        assert body["key_prefix"] == body["key"][:16]
        assert body["scopes"] == ["ingest", "stats"]

        stored = (await db.execute(select(APIKey))).scalars().one()
        assert stored.key_hash == hash_api_key(body["key"])

        # The fresh key works for ingestion
        resp = await client.post("/api/ingest", json=EVENT, headers={"X-API-Key": body["key"]})
        assert resp.status_code == 202

    async def test_wrong_setup_key(self, client, website):
        resp = await client.post(
            "/admin/api-keys",
            json={"website_id": str(website.website_id)},
            headers={"X-Setup-Key": "nope"},
        )
        assert resp.status_code == 403

    async def test_no_credentials(self, client, website):
        resp = await client.post("/admin/api-keys", json={"website_id": str(website.website_id)})
        assert resp.status_code == 401

    async def test_unknown_scope(self, client, website):
        resp = await client.post(
            "/admin/api-keys",
            json={"website_id": str(website.website_id), "scopes": ["ingest", "superuser"]},
            headers=SETUP,
        )
        assert resp.status_code == 400

    async def test_unknown_website(self, client):
        resp = await client.post("/admin/api-keys", json={"website_id": str(uuid.uuid4())}, headers=SETUP)
        assert resp.status_code == 404

    async def test_admin_key_manages_own_website(self, client, website, make_api_key):
        admin_raw, _ = await make_api_key(website.website_id, scopes=("admin",))
        resp = await client.post(
            "/admin/api-keys",
            json={"website_id": str(website.website_id)},
            headers={"X-API-Key": admin_raw},
        )
        assert resp.status_code == 201

    async def test_admin_key_other_website_denied(self, client, website, make_api_key):
        admin_raw, _ = await make_api_key(uuid.uuid4(), scopes=("admin",))
        resp = await client.get(
            f"/admin/websites/{website.website_id}/api-keys",
            headers={"X-API-Key": admin_raw},
        )
        assert resp.status_code == 403

    async def test_ingest_key_cannot_administer(self, client, website, make_api_key):
        raw, _ = await make_api_key(website.website_id)
        resp = await client.get(f"/admin/websites/{website.website_id}/api-keys", headers={"X-API-Key": raw})
        assert resp.status_code == 403

    async def test_list_never_returns_hash(self, client, website, make_api_key):
        await make_api_key(website.website_id)
        await make_api_key(website.website_id)
        resp = await client.get(f"/admin/websites/{website.website_id}/api-keys", headers=SETUP)
        assert resp.status_code == 200
        keys = resp.json()["api_keys"]
        assert len(keys) == 2
        assert all("key_hash" not in k and "key" not in k for k in keys)

    async def test_revoke(self, client, website, make_api_key):
        raw, row = await make_api_key(website.website_id)

        resp = await client.post(f"/admin/api-keys/{row.key_id}/revoke", headers=SETUP)
        assert resp.status_code == 200
        assert resp.json()["revoked_at"] is not None

        resp = await client.post("/api/ingest", json=EVENT, headers={"X-API-Key": raw})
        assert resp.status_code == 401

        resp = await client.post(f"/admin/api-keys/{row.key_id}/revoke", headers=SETUP)
        assert resp.status_code == 404

    async def test_revoke_unknown(self, client):
        resp = await client.post(f"/admin/api-keys/{uuid.uuid4()}/revoke", headers=SETUP)
        assert resp.status_code == 404

    @pytest.mark.parametrize("headers,status", [({}, 403), (SETUP, 200)])
    async def test_maintenance_needs_setup_key(self, client, headers, status):
        resp = await client.post("/admin/maintenance", headers=headers)
        assert resp.status_code == status
