"""
GeoIP lookups against a local MaxMind City database.

The reader is opened once at startup (memory-mapped, no network in the hot
path). No database, a private address, or an unknown IP all resolve to
empty values.
"""

import os
from dataclasses import dataclass

import geoip2.database
import geoip2.errors
import structlog
from maxminddb.errors import InvalidDatabaseError

logger = structlog.get_logger()

_reader: geoip2.database.Reader | None = None


@dataclass(frozen=True)
class GeoLocation:
    country: str | None = None
    region: str | None = None
    city: str | None = None


EMPTY = GeoLocation()


def init_geoip(path: str) -> bool:
    global _reader
    if not path or not os.path.isfile(path):
        logger.warning("geoip_disabled", path=path or None)
        return False
    try:
        _reader = geoip2.database.Reader(path)
    except (OSError, InvalidDatabaseError) as exc:
        logger.warning("geoip_open_failed", path=path, error=str(exc))
        _reader = None
        return False
    logger.info("geoip_loaded", path=path)
    return True


def close_geoip():
    global _reader
    if _reader is not None:
        _reader.close()
    _reader = None


def lookup(ip: str | None) -> GeoLocation:
    if _reader is None or not ip:
        return EMPTY
    try:
        resp = _reader.city(ip)
    except (ValueError, geoip2.errors.GeoIP2Error, InvalidDatabaseError):
        return EMPTY
    return GeoLocation(
        country=resp.country.iso_code,
        region=resp.subdivisions.most_specific.name,
        city=resp.city.name,
    )
