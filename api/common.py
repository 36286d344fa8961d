"""
Common utilities shared between public and admin APIs.

Middleware, the client-IP helper, the health check and the exception handlers
that map data-layer errors to HTTP responses live here so both apps behave alike.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from api.db_retry import DatabaseRetryableError
from api.errors import DatabaseUnavailableError, DuplicateError, NotFoundError, sanitize_error_message
from api.schemas import SLUG_PATTERN
from api.storage import StorageUnavailableError, UploadTooLargeError
from config import TRUSTED_PROXIES

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes retrieved from the database
    may be timezone-naive even though they were stored as UTC.

    Examples:
        >>> ensure_utc(None)
        None
        >>> ensure_utc(datetime(2024, 1, 1, 12, 0, 0))  # naive
        datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        # Assume naive datetimes from SQLite are UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def validate_slug(slug: str) -> bool:
    """Check a slug from a URL path before it reaches a query."""
    return bool(slug) and len(slug) <= 255 and SLUG_PATTERN.match(slug) is not None


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For header only from trusted proxies.

    Security: X-Forwarded-For is only trusted when the direct client IP is in TRUSTED_PROXIES.
    This prevents attackers from spoofing the header to bypass rate limiting.
    Configure SHOWCASE_TRUSTED_PROXIES with your proxy IPs (e.g., "127.0.0.1,10.0.0.1").
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # X-Forwarded-For can contain multiple IPs: client, proxy1, proxy2, ...
            # The first one is the original client
            return forwarded.split(",")[0].strip()

    return client_ip


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        # Prevent MIME-type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'"
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with an id for log correlation.

    An incoming X-Request-ID is reused when it looks sane, otherwise a new
    uuid4 is generated. The id is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER, "")
        if not request_id or len(request_id) > 64 or not request_id.replace("-", "").isalnum():
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


async def check_health() -> dict:
    """
    Perform health checks for the database.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    # Resolved at call time so a swapped test database is picked up
    from api import database as db_module

    checks = {"database": False}

    if db_module.database is not None and db_module.database.is_connected:
        try:
            await db_module.database.fetch_one("SELECT 1")
            checks["database"] = True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
    else:
        logger.warning("Database health check failed: no database configured or connected")

    healthy = all(checks.values())
    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Map data-layer and storage errors to HTTP responses on an app."""

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DuplicateError)
    async def duplicate_handler(request: Request, exc: DuplicateError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(DatabaseRetryableError)
    async def database_retryable_handler(request: Request, exc: DatabaseRetryableError):
        """Handle exhausted retries on locked or deadlocked databases with a 503 response."""
        logger.warning(f"Database retryable error: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable, please retry"},
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(DatabaseUnavailableError)
    async def database_unavailable_handler(request: Request, exc: DatabaseUnavailableError):
        logger.error(f"Database unavailable on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Database unavailable"},
            headers={"Retry-After": "30"},
        )

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError):
        return JSONResponse(
            status_code=503,
            content={"detail": sanitize_error_message(exc.message, context=f"path={request.url.path}")},
            headers={"Retry-After": "30"},
        )

    @app.exception_handler(UploadTooLargeError)
    async def upload_too_large_handler(request: Request, exc: UploadTooLargeError):
        return JSONResponse(status_code=413, content={"detail": str(exc)})
