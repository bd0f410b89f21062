"""
Origin / domain validation for browser beacons.

The request origin is the Origin header, falling back to the Referer. Its
host must equal one of the website's allowed domains or be a subdomain of
one (case-insensitive, port ignored).

CORS:
  - validated explicit origin → echoed back in Access-Control-Allow-Origin
  - no Origin and no Referer at all → "*"
  - disallowed origin → no allow-origin header ever
"""

from urllib.parse import urlsplit

from fastapi import Request

from app.core.errors import BeaconRejected
from app.models.tables import Website

import structlog

logger = structlog.get_logger()

ORIGIN_HINT = "Add this domain to the allowed list in the website settings"


def request_origin(request: Request) -> str | None:
    """Origin header, else scheme://host of the Referer. None when neither is sent."""
    origin = request.headers.get("origin")
    if origin:
        return origin.strip()

    referer = request.headers.get("referer")
    if not referer:
        return None
    try:
        parts = urlsplit(referer)
    except ValueError:
        return referer
    if not parts.scheme or not parts.netloc:
        return referer
    return f"{parts.scheme}://{parts.netloc}"


def origin_host(origin: str) -> str | None:
    try:
        host = urlsplit(origin).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def host_allowed(host: str, allowed_domains) -> bool:
    host = host.lower().rstrip(".")
    for domain in allowed_domains or []:
        domain = str(domain).strip().lower().rstrip(".")
        if not domain:
            continue
        if host == domain or host.endswith("." + domain):
            return True
    return False


def validate_origin(request: Request, website: Website, ip: str | None = None) -> str:
    """Return the value for Access-Control-Allow-Origin or raise 403."""
    origin = request_origin(request)
    if origin is None:
        return "*"

    host = origin_host(origin)
    if host is None or not host_allowed(host, website.allowed_domains):
        logger.warning(
            "origin_not_allowed",
            website_id=str(website.website_id),
            origin=origin,
            ip=ip,
        )
        raise BeaconRejected(
            403,
            "origin_not_allowed",
            "Origin is not allowed for this website",
            origin=origin,
            hint=ORIGIN_HINT,
        )
    return origin


def cors_headers(allow_origin: str | None) -> dict[str, str]:
    if not allow_origin:
        return {}
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Max-Age": "86400",
    }
    if allow_origin != "*":
        headers["Vary"] = "Origin"
    return headers
