from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Beacon, ingest and pixel paths
TRACKING_PREFIXES = ("/api/", "/p/")

NO_CACHE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}

COMMON = {
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        if "server" in response.headers:
            del response.headers["server"]

        if request.url.path.startswith(TRACKING_PREFIXES):
            response.headers.update(NO_CACHE)
            # The pixel is loaded as an <img> from customer pages
            response.headers["Cross-Origin-Resource-Policy"] = "cross-origin"

        response.headers.update(COMMON)
        return response
