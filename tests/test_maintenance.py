"""Tests for ledger retention, rate-limit cleanup and the realtime hub."""

import asyncio
import datetime
import uuid

from app.core import idempotency
from app.core.maintenance import run_maintenance
from app.core.realtime import RealtimeHub
from app.middleware.rate_limit import consume
from app.models.tables import EventIdempotency, RateLimitCounter, utcnow
from conftest import count_rows


class TestPartitionNames:
    def test_name(self):
        assert idempotency.partition_name(datetime.date(2026, 3, 9)) == "event_idempotency_2026_03_09"

    def test_inverse(self):
        day = datetime.date(2025, 12, 31)
        assert idempotency.partition_day(idempotency.partition_name(day)) == day

    def test_foreign_tables_ignored(self):
        assert idempotency.partition_day("event_idempotency") is None
        assert idempotency.partition_day("event_idempotency_default") is None
        assert idempotency.partition_day("website_event") is None


class TestMaintenance:
    async def test_expires_old_ledger_days(self, db, session_maker):
        now = utcnow()
        old = now - datetime.timedelta(days=30)
        await idempotency.register(db, uuid.uuid4(), uuid.uuid4(), now=old)
        await idempotency.register(db, uuid.uuid4(), uuid.uuid4(), now=now)
        await db.commit()

        report = await run_maintenance(session_maker)

        assert report["partitions_created"] == 0  # not PostgreSQL
        assert report["partitions_expired"] == 1
        assert await count_rows(db, EventIdempotency) == 1

    async def test_purges_expired_rate_limit_windows(self, db, session_maker):
        await consume(db, "key:stale", now=utcnow() - datetime.timedelta(minutes=10))
        await consume(db, "key:fresh")

        report = await run_maintenance(session_maker)

        assert report["rate_limit_rows_purged"] == 1
        assert await count_rows(db, RateLimitCounter) == 1
        assert await count_rows(db, RateLimitCounter, RateLimitCounter.bucket_key == "key:fresh") == 1

    async def test_consume_accumulates(self, db):
        now = utcnow()
        assert await consume(db, "website:x", cost=3, now=now) == 3
        assert await consume(db, "website:x", cost=2, now=now) == 5


class TestRealtimeHub:
    async def test_counts_distinct_sessions(self):
        hub = RealtimeHub(window_seconds=300)
        website_id = uuid.uuid4()
        s1, s2 = uuid.uuid4(), uuid.uuid4()

        await hub.notify(website_id, s1, {"n": 1})
        await hub.notify(website_id, s1, {"n": 2})
        await hub.notify(website_id, s2, {"n": 3})

        assert hub.active_visitors(website_id) == 2
        assert hub.active_visitors(uuid.uuid4()) == 0

    async def test_window_expiry(self):
        hub = RealtimeHub(window_seconds=0)
        website_id = uuid.uuid4()
        await hub.notify(website_id, uuid.uuid4(), {})
        await asyncio.sleep(0.01)
        assert hub.active_visitors(website_id) == 0

    async def test_fan_out_and_unsubscribe(self):
        hub = RealtimeHub()
        website_id = uuid.uuid4()
        queue = hub.subscribe(website_id)

        await hub.notify(website_id, uuid.uuid4(), {"event": "signup"})
        assert queue.get_nowait() == {"event": "signup"}

        hub.unsubscribe(website_id, queue)
        await hub.notify(website_id, uuid.uuid4(), {"event": "later"})
        assert queue.empty()

    async def test_full_queue_drops(self):
        hub = RealtimeHub()
        website_id = uuid.uuid4()
        queue = hub.subscribe(website_id)
        for i in range(queue.maxsize + 5):
            await hub.notify(website_id, uuid.uuid4(), {"i": i})
        assert queue.qsize() == queue.maxsize
