"""
Bot detection — per-IP reputation + UA signatures.

Every beacon is one observation of (ip, user_agent):
  1. The UA is matched against known bot signatures (first match wins).
     Named signature → confidence 90. Generic catch-all → confidence 60.
  2. The observation is merged into the IP's ip_metadata row:
       - total_requests always increments
       - requests_last_hour / requests_last_minute restart at 1 once the
         previous last_seen falls outside the window
       - max_requests_per_minute is a running maximum
       - is_bot is sticky: a positive classification sets it, nothing clears it
       - confidence is a running maximum
       - up to 5 distinct UAs are kept as a sample
  3. An IP whose per-minute rate crosses the velocity threshold is classified
     "high_velocity" even with a clean UA.

Design: bots are NOT told they were caught. The caller answers 202 either way.
Detection failures never block traffic; the request is treated as human.
"""

import datetime
import re
from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from user_agents import parse as parse_ua

from app.config import get_settings
from app.models.database import upsert
from app.models.tables import IPMetadata, as_utc, utcnow

logger = structlog.get_logger()

NAMED_CONFIDENCE = 90
GENERIC_CONFIDENCE = 60
VELOCITY_CONFIDENCE = 70
UA_SAMPLE_SIZE = 5

MINUTE = datetime.timedelta(minutes=1)
HOUR = datetime.timedelta(hours=1)


@dataclass(frozen=True)
class BotSignature:
    name: str
    pattern: re.Pattern
    bot_type: str
    is_legitimate: bool  # identifies itself honestly (search/social crawlers)


def _sig(name: str, pattern: str, bot_type: str, is_legitimate: bool) -> BotSignature:
    return BotSignature(name, re.compile(pattern, re.IGNORECASE), bot_type, is_legitimate)


# Ordered: specific signatures first, the generic catch-all is matched last.
KNOWN_BOT_SIGNATURES: list[BotSignature] = [
    # Search engines
    _sig("googlebot", r"Googlebot|Google-InspectionTool|AdsBot-Google", "search", True),
    _sig("bingbot", r"bingbot|BingPreview", "search", True),
    _sig("yandexbot", r"YandexBot|YandexMobileBot", "search", True),
    _sig("baiduspider", r"Baiduspider", "search", True),
    _sig("duckduckbot", r"DuckDuckBot", "search", True),
    _sig("applebot", r"Applebot", "search", True),
    _sig("yahoo_slurp", r"Yahoo! Slurp", "search", True),

    # Social / messaging link previews
    _sig("facebookexternalhit", r"facebookexternalhit|facebookcatalog", "social", True),
    _sig("twitterbot", r"Twitterbot", "social", True),
    _sig("linkedinbot", r"LinkedInBot", "social", True),
    _sig("slackbot", r"Slackbot|Slack-ImgProxy", "social", True),
    _sig("telegrambot", r"TelegramBot", "social", True),
    _sig("discordbot", r"Discordbot", "social", True),
    _sig("whatsapp", r"WhatsApp", "social", True),

    # SEO crawlers
    _sig("ahrefsbot", r"AhrefsBot", "seo", True),
    _sig("semrushbot", r"SemrushBot", "seo", True),
    _sig("mj12bot", r"MJ12bot", "seo", True),
    _sig("dotbot", r"DotBot", "seo", True),
    _sig("petalbot", r"PetalBot", "seo", True),

    # AI crawlers
    _sig("gptbot", r"GPTBot|ChatGPT-User|OAI-SearchBot", "ai", True),
    _sig("claudebot", r"ClaudeBot|Claude-Web|anthropic-ai", "ai", True),
    _sig("ccbot", r"CCBot", "ai", True),
    _sig("bytespider", r"Bytespider", "ai", True),

    # Monitoring
    _sig("uptimerobot", r"UptimeRobot", "monitoring", True),
    _sig("pingdom", r"Pingdom", "monitoring", True),

    # HTTP libraries / CLI tools
    _sig("curl", r"curl/", "tool", False),
    _sig("wget", r"wget/", "tool", False),
    _sig("python_requests", r"python-requests", "tool", False),
    _sig("python_urllib", r"python-urllib", "tool", False),
    _sig("python_httpx", r"python-httpx", "tool", False),
    _sig("aiohttp", r"aiohttp", "tool", False),
    _sig("go_http_client", r"Go-http-client", "tool", False),
    _sig("node_fetch", r"node-fetch|undici", "tool", False),
    _sig("axios", r"axios/", "tool", False),
    _sig("java", r"java/|Apache-HttpClient|okhttp", "tool", False),
    _sig("libwww_perl", r"libwww-perl", "tool", False),
    _sig("scrapy", r"scrapy", "scraper", False),

    # Headless / automated browsers
    _sig("headless_chrome", r"HeadlessChrome", "headless", False),
    _sig("phantomjs", r"PhantomJS", "headless", False),
    _sig("selenium", r"Selenium|webdriver", "headless", False),
    _sig("puppeteer", r"puppeteer", "headless", False),
    _sig("playwright", r"Playwright", "headless", False),
]

GENERIC_BOT_PATTERN = re.compile(r"bot\b|bot/|crawl|spider|slurp", re.IGNORECASE)


@dataclass(frozen=True)
class BotMatch:
    pattern_name: str
    bot_type: str
    is_legitimate: bool
    confidence: int

    @property
    def reason(self) -> str:
        return f"User agent matches known pattern: {self.pattern_name}"


def match_user_agent(user_agent: str | None) -> BotMatch | None:
    """Classify a UA against the signature table. None = looks human."""
    ua = (user_agent or "").strip()
    if not ua:
        return BotMatch("generic_bot", "unknown", False, GENERIC_CONFIDENCE)

    for sig in KNOWN_BOT_SIGNATURES:
        if sig.pattern.search(ua):
            return BotMatch(sig.name, sig.bot_type, sig.is_legitimate, NAMED_CONFIDENCE)

    if GENERIC_BOT_PATTERN.search(ua) or parse_ua(ua).is_bot:
        return BotMatch("generic_bot", "unknown", False, GENERIC_CONFIDENCE)

    return None


# ---------------------------------------------------------------------------
# Merge rules (pure, no I/O)
# ---------------------------------------------------------------------------

def new_ip_record(
    ip: str,
    user_agent: str | None,
    match: BotMatch | None,
    now: datetime.datetime,
    country: str | None = None,
) -> IPMetadata:
    """ip_metadata row for the first observation of an IP."""
    return IPMetadata(
        ip=ip,
        first_seen=now,
        last_seen=now,
        total_requests=1,
        requests_last_hour=1,
        requests_last_minute=1,
        max_requests_per_minute=1,
        is_bot=match is not None,
        bot_type=match.bot_type if match else None,
        confidence=match.confidence if match else 0,
        detection_reason=match.reason if match else "",
        unique_user_agents=1 if user_agent else 0,
        user_agent_sample=[user_agent] if user_agent else [],
        country=country,
        updated_at=now,
    )


def apply_observation(
    record: IPMetadata,
    user_agent: str | None,
    match: BotMatch | None,
    now: datetime.datetime,
    country: str | None = None,
    velocity_threshold: int = 0,
) -> bool:
    """Merge one observation into an existing row. Returns the sticky is_bot."""
    last_seen = as_utc(record.last_seen) or now

    record.total_requests = (record.total_requests or 0) + 1

    if last_seen < now - HOUR:
        record.requests_last_hour = 1
    else:
        record.requests_last_hour = (record.requests_last_hour or 0) + 1

    if last_seen < now - MINUTE:
        record.requests_last_minute = 1
    else:
        record.requests_last_minute = (record.requests_last_minute or 0) + 1

    record.max_requests_per_minute = max(
        record.max_requests_per_minute or 0,
        record.requests_last_minute,
    )

    if match is None and velocity_threshold and record.requests_last_minute > velocity_threshold:
        match = BotMatch("high_velocity", "high_velocity", False, VELOCITY_CONFIDENCE)

    if match is not None:
        record.is_bot = True
        record.bot_type = match.bot_type
        record.detection_reason = (
            f"{record.requests_last_minute} requests in the last minute"
            if match.pattern_name == "high_velocity" else match.reason
        )
    else:
        record.is_bot = bool(record.is_bot)

    record.confidence = max(record.confidence or 0, match.confidence if match else 0)

    sample = list(record.user_agent_sample or [])
    if user_agent and user_agent not in sample:
        record.unique_user_agents = (record.unique_user_agents or 0) + 1
        if len(sample) < UA_SAMPLE_SIZE:
            # New list so the JSON column is flagged dirty
            record.user_agent_sample = sample + [user_agent]

    if country:
        record.country = country
    record.last_seen = now
    record.updated_at = now

    return record.is_bot


def _row_values(record: IPMetadata) -> dict:
    return {col.name: getattr(record, col.name) for col in IPMetadata.__table__.columns}


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

async def classify_request(
    db: AsyncSession,
    ip: str,
    user_agent: str | None,
    country: str | None = None,
) -> bool:
    """Record the observation and return whether the IP is a bot.

    First sight is a single INSERT .. ON CONFLICT DO NOTHING. Otherwise the
    row is locked (SELECT .. FOR UPDATE) for the merge, so concurrent beacons
    from one IP serialize on that row only and no increment is lost.
    """
    settings = get_settings()
    now = utcnow()
    match = match_user_agent(user_agent)

    try:
        fresh = new_ip_record(ip, user_agent, match, now, country)
        stmt = (
            upsert(db, IPMetadata)
            .values(**_row_values(fresh))
            .on_conflict_do_nothing(index_elements=["ip"])
            .returning(IPMetadata.ip)
        )
        inserted = (await db.execute(stmt)).scalar_one_or_none()

        if inserted is not None:
            is_bot = fresh.is_bot
        else:
            stmt = (
                select(IPMetadata)
                .where(IPMetadata.ip == ip)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            record = (await db.execute(stmt)).scalar_one()
            is_bot = apply_observation(
                record, user_agent, match, now, country,
                velocity_threshold=settings.bot_velocity_threshold_per_minute,
            )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("bot_detection_error", ip=ip, error=str(exc))
        return False

    if is_bot:
        logger.info(
            "bot_detected",
            ip=ip,
            pattern=match.pattern_name if match else None,
            bot_type=match.bot_type if match else None,
        )
    return is_bot
