"""
Client IP extraction per website proxy_mode.

  none        → the socket peer
  xforwarded  → first entry of X-Forwarded-For (the original client)
  cloudflare  → CF-Connecting-IP

Headers are only trusted when the website says it sits behind that proxy;
otherwise anyone could spoof their IP with a header.
"""

from fastapi import Request

PROXY_NONE = "none"
PROXY_XFORWARDED = "xforwarded"
PROXY_CLOUDFLARE = "cloudflare"


def _peer(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def resolve_client_ip(request: Request, proxy_mode: str | None) -> str:
    if proxy_mode == PROXY_CLOUDFLARE:
        cf_ip = request.headers.get("cf-connecting-ip", "").strip()
        if cf_ip:
            return cf_ip
    elif proxy_mode == PROXY_XFORWARDED:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return _peer(request)
