"""
Request rate limits for the HTTP surface.

The webhook receivers answer without admin credentials, so they are the
routes that need a limit; manual syncs get one because each request fans out
into many tracker calls. slowapi with in-memory storage, keyed by client IP.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request
from fastapi.responses import JSONResponse

from app.config import settings


# Counters live in process memory; a multi-instance deployment would need a shared storage_uri
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)

# Usage: @limiter.limit(WEBHOOK_RATE_LIMIT) on a route that takes ``request: Request``

# Sized for tracker event bursts
WEBHOOK_RATE_LIMIT = settings.webhook_rate_limit

SYNC_RATE_LIMIT = "10/minute"


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Answer 429 with the limit that was hit."""
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please slow down your requests.",
            "limit": exc.detail,
        },
        headers={"Retry-After": "60"},
    )
