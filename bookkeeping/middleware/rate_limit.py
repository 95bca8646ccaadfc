"""Inbound rate limiting using slowapi."""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from bookkeeping.config import settings
from bookkeeping.errors import error_body


logger = logging.getLogger(__name__)


# Per-endpoint limits
AUTH_LIMIT = "5 per 15 minutes"
AUTH_CALLBACK_LIMIT = "10 per 15 minutes"
DISCONNECT_LIMIT = "5 per 15 minutes"
SYNC_LIMIT = "2 per hour"
FULL_SYNC_LIMIT = "1 per hour"
RECONCILE_LIMIT = "5 per hour"
STATUS_LIMIT = "60 per minute"
REPORTS_LIMIT = "30 per minute"
DEFAULT_LIMIT = "100 per minute"


# Create limiter with IP-based key function
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[DEFAULT_LIMIT],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
    headers_enabled=False,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi rejections in the standard error envelope."""
    retry_after = exc.limit.limit.get_expiry() if exc.limit is not None else 60
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)} on {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=429,
        content=error_body(
            request,
            "Too many requests, please try again later",
            "RATE_LIMIT_ERROR",
            429,
            {"limit": str(exc.detail), "retryAfter": retry_after},
        ),
        headers={"Retry-After": str(retry_after)},
    )


def setup_rate_limiting(app):
    """Configure rate limiting for the FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
