"""
User-Agent → (browser, os, device).

Ordered substring matching on the lowercased UA, first match wins. Order
matters: Edge UAs contain "chrome", Chrome UAs contain "safari", Android UAs
contain "linux".
"""

from dataclasses import dataclass

BROWSER_RULES: list[tuple[tuple[str, ...], str]] = [
    (("edg",), "Edge"),
    (("chrome",), "Chrome"),
    (("firefox",), "Firefox"),
    (("safari",), "Safari"),
]

OS_RULES: list[tuple[tuple[str, ...], str]] = [
    (("android",), "Android"),
    (("iphone", "ipad", "ios"), "iOS"),
    (("windows",), "Windows"),
    (("mac os x", "macintosh"), "macOS"),
    (("linux",), "Linux"),
]

MOBILE_MARKERS: tuple[str, ...] = ("mobile", "iphone", "android", "ipad")


@dataclass(frozen=True)
class ClientInfo:
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "desktop"


def _first_match(ua: str, rules: list[tuple[tuple[str, ...], str]]) -> str:
    for needles, label in rules:
        if any(needle in ua for needle in needles):
            return label
    return "Unknown"


def parse_user_agent(user_agent: str | None) -> ClientInfo:
    ua = (user_agent or "").lower()
    return ClientInfo(
        browser=_first_match(ua, BROWSER_RULES),
        os=_first_match(ua, OS_RULES),
        device="mobile" if any(m in ua for m in MOBILE_MARKERS) else "desktop",
    )
