"""
Common utilities shared by the API routes.

Client IP resolution, middleware, the admin guard and health checks live here
so that route modules stay focused on request handling.
"""

import asyncio
import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from api import storage
from api.database import database
from config import ADMIN_API_SECRET, STORAGE_CHECK_TIMEOUT, TRUSTED_PROXIES

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security.admin_auth")

REQUEST_ID_HEADER = "X-Request-ID"
ADMIN_SECRET_HEADER = "X-Admin-Secret"


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes read back from it are
    naive even though they were written as UTC.

    Examples:
        >>> ensure_utc(None)
        None
        >>> ensure_utc(datetime(2024, 1, 1, 12, 0, 0))  # naive
        datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For only from trusted proxies.

    Configure VOTELY_TRUSTED_PROXIES with your proxy IPs (e.g., "127.0.0.1,10.0.0.1").
    Without it the header is ignored, so clients cannot spoof their way past
    the rate limiter.
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # client, proxy1, proxy2, ... - the first entry is the original client
            return forwarded.split(",")[0].strip()

    return client_ip


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Echo the caller's X-Request-ID, or generate one, and expose it on request.state."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER)
        if not request_id or len(request_id) > 128:
            request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors with a proper JSON response."""
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded",
            "error": str(exc.detail),
        },
    )


def is_admin_request(request: Request) -> bool:
    """
    Whether the request carries admin credentials.

    With no secret configured every caller is treated as the admin, which is
    how moderation worked before the secret existed.
    """
    if not ADMIN_API_SECRET:
        return True
    provided = request.headers.get(ADMIN_SECRET_HEADER)
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), ADMIN_API_SECRET.encode())


async def require_admin(request: Request) -> None:
    """
    FastAPI dependency guarding moderation endpoints.

    Raises 401 when the X-Admin-Secret header is missing and 403 when it does
    not match VOTELY_ADMIN_API_SECRET.
    """
    if not ADMIN_API_SECRET:
        return

    provided = request.headers.get(ADMIN_SECRET_HEADER)
    client_ip = get_real_ip(request)
    if not provided:
        security_logger.warning(
            f"Admin request without credentials: ip={client_ip} path={request.url.path}"
        )
        raise HTTPException(status_code=401, detail="Admin authentication required")

    if not hmac.compare_digest(provided.encode(), ADMIN_API_SECRET.encode()):
        security_logger.warning(
            f"Admin request with invalid secret: ip={client_ip} path={request.url.path}"
        )
        raise HTTPException(status_code=403, detail="Invalid admin credentials")


async def check_health() -> dict:
    """
    Perform health checks for database and storage.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    checks = {
        "database": False,
        "storage": False,
    }

    try:
        await database.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    # A hung bucket request must not hang the health probe
    try:
        checks["storage"] = await asyncio.wait_for(
            storage.video_storage.check_storage_available(),
            timeout=STORAGE_CHECK_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning("Storage health check timed out")
    except Exception as e:
        logger.warning(f"Storage health check failed: {e}")

    healthy = all(checks.values())

    return {
        "checks": checks,
        "healthy": healthy,
        "storage_mode": storage.video_storage.mode.value,
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "status_code": 200 if healthy else 503,
    }
