"""
URL & referrer parsing for the event writer.

  - Page URL   → path, query (omitted when empty), hostname
  - Referrer   → path, query, domain ("www." stripped; localhost/empty dropped)
  - Spam check → substring match of the referrer domain against a deny-list

Referral noise (self-referral from local dev, spam bots advertising SEO
services) must never reach referrer analytics.
"""

from dataclasses import dataclass
from urllib.parse import urlsplit

# Known referrer-spam domains (substring match against the referrer host)
SPAM_REFERRERS: tuple[str, ...] = (
    "semalt.com",
    "buttons-for-website.com",
    "darodar.com",
    "best-seo-offer.com",
    "free-share-buttons.com",
    "blackhatworth.com",
    "hulfingtonpost.com",
    "o-o-6-o-o.com",
    "priceg.com",
    "make-money-online",
    "simple-share-buttons.com",
    "kambasoft.com",
)


@dataclass(frozen=True)
class ParsedURL:
    path: str | None = None
    query: str | None = None
    hostname: str | None = None


@dataclass(frozen=True)
class ParsedReferrer:
    path: str | None = None
    query: str | None = None
    domain: str | None = None


def _split(raw: str):
    try:
        return urlsplit(raw)
    except ValueError:
        return None


def url_path(raw: str | None) -> str | None:
    """Path component only, used for session entry/exit pages."""
    if raw is None:
        return None
    parts = _split(raw)
    if parts is None:
        return None
    return parts.path


def parse_page_url(raw: str | None, hostname: str | None = None) -> ParsedURL:
    """Split the tracked page URL. An explicit hostname wins over the URL's."""
    if raw is None:
        return ParsedURL()
    parts = _split(raw)
    if parts is None:
        return ParsedURL()

    return ParsedURL(
        path=parts.path,
        query=parts.query or None,
        hostname=hostname if hostname is not None else (parts.hostname or ""),
    )


def parse_referrer(raw: str | None) -> ParsedReferrer:
    if raw is None:
        return ParsedReferrer()
    parts = _split(raw)
    if parts is None:
        return ParsedReferrer()

    domain = parts.hostname or ""
    if domain.startswith("www."):
        domain = domain[4:]

    return ParsedReferrer(
        path=parts.path,
        query=parts.query or None,
        domain=domain if domain and domain != "localhost" else None,
    )


def is_spam_referrer(referrer: str | None) -> bool:
    if not referrer:
        return False

    parts = _split(referrer)
    if parts is None:
        return False

    domain = (parts.hostname or "").lower()
    if domain.startswith("www."):
        domain = domain[4:]
    if not domain:
        return False

    return any(spam in domain for spam in SPAM_REFERRERS)
