"""Request rate limiting for the Vulnera API.

slowapi enforces one application-wide fixed window per client address. The
counters live in a `limits` storage backend named by URI: Redis in production
so every worker shares the same limits, memory:// for a single process.
The same storage backs the request replay guard.
"""

import logging
import time

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from vulnera.errors import RateLimitedError
from vulnera.protocol import RATE_LIMIT, RATE_WINDOW

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_URI = "memory://"


def client_ip(request: Request) -> str:
    """Client address: X-Forwarded-For first hop, then X-Real-IP, then the peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def create_limiter(limit: int = RATE_LIMIT, window: int = RATE_WINDOW,
                   storage_uri: str = DEFAULT_STORAGE_URI) -> Limiter:
    """`limit` requests per `window` seconds per client, shared by every route."""
    return Limiter(
        key_func=client_ip,
        application_limits=[f"{limit}/{window} seconds"],
        storage_uri=storage_uri,
        strategy="fixed-window",
        headers_enabled=True,
    )


def retry_after(limiter: Limiter, request: Request) -> int:
    """Seconds until the window that limited this request resets."""
    current = getattr(request.state, "view_rate_limit", None)
    if current is None:
        return 0
    item, args = current
    reset_at, _ = limiter.limiter.get_window_stats(item, *args)
    return max(1, int(1 + reset_at - time.time()))


def rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    # Plain def: SlowAPIMiddleware calls the handler synchronously
    limiter = request.app.state.limiter
    wait = retry_after(limiter, request)
    logger.warning("rate limit %s exceeded by %s", exc.detail, client_ip(request))
    err = RateLimitedError("Too many requests. Please try again later.", retryAfter=wait)
    response = JSONResponse(status_code=err.status_code, content=err.to_dict())
    response = limiter._inject_headers(response, request.state.view_rate_limit)
    response.headers["Retry-After"] = str(wait)
    return response
