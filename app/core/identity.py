"""
Session & visit identity derivation.

    session_id = H(website_id | ip | user_agent | month_salt)
    visit_id   = H(session_id | hour_salt)

- H          → HMAC-SHA256 keyed with identity_secret, first 16 bytes as a UUID
- month_salt → SHA-256 of "YYYY-MM" (the bucket the event falls in)
- hour_salt  → SHA-256 of "YYYY-MM-DDTHH"

Same tuple + same bucket → same id, so no lookup is needed to attribute a
beacon to its session. Nothing here is reversible to the IP or UA.
"""

import datetime
import hashlib
import hmac
import uuid

from app.config import get_settings

_BUCKET_FORMATS = {
    "month": "%Y-%m",
    "day": "%Y-%m-%d",
    "hour": "%Y-%m-%dT%H",
}


def time_salt(moment: datetime.datetime, period: str) -> str:
    """Salt for the time bucket containing `moment` (UTC)."""
    fmt = _BUCKET_FORMATS.get(period, _BUCKET_FORMATS["day"])
    if moment.tzinfo is not None:
        moment = moment.astimezone(datetime.timezone.utc)
    key = moment.strftime(fmt)
    return hashlib.sha256(key.encode()).hexdigest()


def derive_uuid(*parts: str) -> uuid.UUID:
    """Deterministic UUID from the joined parts."""
    secret = get_settings().identity_secret
    digest = hmac.new(secret.encode(), "|".join(parts).encode(), hashlib.sha256).digest()
    return uuid.UUID(bytes=digest[:16])


def session_id_for(
    website_id: uuid.UUID,
    ip: str,
    user_agent: str,
    moment: datetime.datetime,
) -> uuid.UUID:
    return derive_uuid(str(website_id), ip, user_agent, time_salt(moment, "month"))


def visitor_session_id_for(
    website_id: uuid.UUID,
    visitor_id: str,
    moment: datetime.datetime,
) -> uuid.UUID:
    """Server-side ingestion: the caller's visitor id replaces ip + ua."""
    return derive_uuid(str(website_id), "visitor", visitor_id, time_salt(moment, "month"))


def visit_id_for(session_id: uuid.UUID, moment: datetime.datetime) -> uuid.UUID:
    return derive_uuid(str(session_id), time_salt(moment, "hour"))
