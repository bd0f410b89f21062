"""
Validation rules for server-side ingestion payloads.

  event        required, ≤ 50 chars
  visitor_id   required
  url          required when event == "page_view", ≤ max_url_length
  timestamp    within 30 days of now, either direction
  properties   ≤ 100 keys, no "$"/"_" prefixed keys, nesting depth ≤ 5

Depth: a scalar is 0, each object/array level adds 1 ({"a": 1} is 1).
"""

import datetime

from app.config import get_settings
from app.models.schemas import IngestEvent

MAX_EVENT_NAME_LENGTH = 50
MAX_PROPERTIES = 100
MAX_PROPERTY_DEPTH = 5
MAX_TIMESTAMP_SKEW = datetime.timedelta(days=30)
RESERVED_PREFIXES = ("$", "_")
PAGE_VIEW = "page_view"


def json_depth(value) -> int:
    if isinstance(value, dict):
        return 1 + max((json_depth(v) for v in value.values()), default=0)
    if isinstance(value, (list, tuple)):
        return 1 + max((json_depth(v) for v in value), default=0)
    return 0


def validate_properties(properties: dict | None) -> list[str]:
    if not properties:
        return []

    errors = []
    if len(properties) > MAX_PROPERTIES:
        errors.append(
            f"properties exceed the maximum of {MAX_PROPERTIES} keys (got {len(properties)})"
        )

    for key in properties:
        if str(key).startswith(RESERVED_PREFIXES):
            errors.append(f"reserved property key: {key!r} (keys must not start with $ or _)")

    depth = json_depth(properties)
    if depth > MAX_PROPERTY_DEPTH:
        errors.append(f"properties exceed max depth of {MAX_PROPERTY_DEPTH} (got {depth})")

    return errors


def validate_ingest_event(
    payload: IngestEvent,
    now: datetime.datetime | None = None,
) -> list[str]:
    """All problems with one event. Empty list = valid."""
    settings = get_settings()
    now = now or datetime.datetime.now(datetime.timezone.utc)
    errors = []

    event = (payload.event or "").strip()
    if not event:
        errors.append("event is required")
    elif len(event) > MAX_EVENT_NAME_LENGTH:
        errors.append(f"event exceeds maximum length of {MAX_EVENT_NAME_LENGTH} characters")

    if not (payload.visitor_id or "").strip():
        errors.append("visitor_id is required")

    if event == PAGE_VIEW and not payload.url:
        errors.append("url is required for page_view")
    if payload.url and len(payload.url) > settings.max_url_length:
        errors.append(f"url exceeds maximum length of {settings.max_url_length} characters")

    if payload.timestamp is not None:
        try:
            moment = datetime.datetime.fromtimestamp(payload.timestamp, datetime.timezone.utc)
        except (OverflowError, OSError, ValueError):
            moment = None
        if moment is None or abs(now - moment) > MAX_TIMESTAMP_SKEW:
            errors.append("timestamp must be within 30 days of now")

    errors.extend(validate_properties(payload.properties))
    return errors
