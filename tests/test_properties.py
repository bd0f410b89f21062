"""Tests for server-side payload validation."""

import datetime
import time

import pytest

from app.core.properties import json_depth, validate_ingest_event, validate_properties
from app.models.schemas import IngestEvent


def _nested(levels: int) -> dict:
    """A properties object `levels` deep: {"k": {"k": ... 1}}."""
    value = 1
    for _ in range(levels):
        value = {"k": value}
    return value


class TestJsonDepth:
    @pytest.mark.parametrize("value,depth", [
        ("scalar", 0),
        (42, 0),
        ({}, 1),
        ({"a": 1}, 1),
        ([1, 2], 1),
        ([{"a": 1}], 2),
        ({"a": {"b": [1]}}, 3),
    ])
    def test_depths(self, value, depth):
        assert json_depth(value) == depth


class TestValidateProperties:
    def test_reserved_dollar_key(self):
        errors = validate_properties({"$secret": 1})
        assert any("reserved property key" in e for e in errors)

    def test_reserved_underscore_key(self):
        errors = validate_properties({"_internal": 1})
        assert any("reserved property key" in e for e in errors)

    def test_too_many_keys(self):
        errors = validate_properties({f"k{i}": i for i in range(101)})
        assert any("exceed" in e for e in errors)

    def test_hundred_keys_ok(self):
        assert validate_properties({f"k{i}": i for i in range(100)}) == []

    def test_six_levels_rejected(self):
        errors = validate_properties(_nested(6))
        assert any("max depth" in e for e in errors)

    def test_three_levels_accepted(self):
        assert validate_properties(_nested(3)) == []

    def test_five_levels_accepted(self):
        assert validate_properties(_nested(5)) == []

    def test_empty(self):
        assert validate_properties(None) == []


class TestValidateIngestEvent:
    def test_valid_custom_event(self):
        assert validate_ingest_event(IngestEvent(event="signup", visitor_id="u1")) == []

    def test_event_required(self):
        assert "event is required" in validate_ingest_event(IngestEvent(visitor_id="u1"))

    def test_event_too_long(self):
        errors = validate_ingest_event(IngestEvent(event="x" * 51, visitor_id="u1"))
        assert any("exceeds maximum length" in e for e in errors)

    def test_visitor_required(self):
        assert "visitor_id is required" in validate_ingest_event(IngestEvent(event="signup"))

    def test_page_view_needs_url(self):
        errors = validate_ingest_event(IngestEvent(event="page_view", visitor_id="u1"))
        assert "url is required for page_view" in errors

    def test_page_view_with_url(self):
        payload = IngestEvent(event="page_view", visitor_id="u1", url="https://example.com/")
        assert validate_ingest_event(payload) == []

    def test_url_too_long(self):
        payload = IngestEvent(event="page_view", visitor_id="u1", url="https://example.com/" + "a" * 2000)
        assert any("exceeds maximum length" in e for e in validate_ingest_event(payload))

    @pytest.mark.parametrize("offset_days", [-31, 31])
    def test_timestamp_out_of_range(self, offset_days):
        ts = int(time.time() + offset_days * 86400)
        errors = validate_ingest_event(IngestEvent(event="signup", visitor_id="u1", timestamp=ts))
        assert "timestamp must be within 30 days of now" in errors

    @pytest.mark.parametrize("offset_days", [-29, 0, 29])
    def test_timestamp_in_range(self, offset_days):
        now = datetime.datetime.now(datetime.timezone.utc)
        ts = int(now.timestamp() + offset_days * 86400)
        payload = IngestEvent(event="signup", visitor_id="u1", timestamp=ts)
        assert validate_ingest_event(payload, now=now) == []

    def test_reports_every_problem(self):
        errors = validate_ingest_event(IngestEvent(properties={"$x": 1}))
        assert "event is required" in errors
        assert "visitor_id is required" in errors
        assert any("reserved property key" in e for e in errors)
