"""
Public API - serves the catalog to anonymous visitors and handles sign-in.
Runs on port 9000.

Every catalog read here is pinned to published videos.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter

from api import auth, catalog, identity
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    register_exception_handlers,
    validate_slug,
)
from api.database import configure_database, database
from api.enums import VideoStatus
from api.errors import sanitize_error_message
from api.queries import VideoFilter
from api.schemas import (
    CategoryResponse,
    LoginRequest,
    TagResponse,
    TokenResponse,
    UserResponse,
    VideoResponse,
    ViewCountResponse,
)
from config import (
    CORS_ALLOWED_ORIGINS,
    MEDIA_URL_PREFIX,
    PUBLIC_PORT,
    RATE_LIMIT_AUTH,
    RATE_LIMIT_AUTH_REFRESH,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_PUBLIC_DEFAULT,
    RATE_LIMIT_PUBLIC_VIDEOS_LIST,
    RATE_LIMIT_PUBLIC_VIEWS,
    RATE_LIMIT_STORAGE_URL,
    REFRESH_COOKIE_NAME,
    REFRESH_TOKEN_EXPIRY_DAYS,
    SECURE_COOKIES,
    STORAGE_BACKEND,
    STORAGE_PATH,
)

logger = logging.getLogger(__name__)

# Initialize rate limiter
# Uses in-memory storage by default, can be configured to use Redis
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "SHOWCASE_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    if database is None:
        logger.warning("SHOWCASE_DATABASE_URL is empty; catalog requests will answer 503")
        yield
        return
    await database.connect()
    await configure_database()
    yield
    await database.disconnect()


app = FastAPI(title="Showcase", description="Video catalog", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
register_exception_handlers(app)


@app.exception_handler(identity.IdentityProviderError)
async def identity_provider_error_handler(request: Request, exc: identity.IdentityProviderError):
    detail = exc.message if exc.status_code == 401 else sanitize_error_message(exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)

# If CORS_ALLOWED_ORIGINS is empty, allow same-origin only (no CORS headers)
# Note: allow_credentials=True requires specific origins, not wildcards
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS if CORS_ALLOWED_ORIGINS else [],
    allow_credentials=bool(CORS_ALLOWED_ORIGINS),  # Only enable with explicit origins
    allow_methods=["GET", "HEAD", "OPTIONS", "POST"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["Content-Length", "X-Request-ID"],
)

# Uploaded media is served straight from disk when using local storage
if STORAGE_BACKEND == "local":
    app.mount(MEDIA_URL_PREFIX, StaticFiles(directory=STORAGE_PATH, check_dir=False), name="media")


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the database is unreachable.
    """
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
        },
    )


# ============ Videos ============


@app.get("/api/videos")
@limiter.limit(RATE_LIMIT_PUBLIC_VIDEOS_LIST)
async def list_videos(
    request: Request,
    category_id: Optional[int] = None,
    tag_ids: List[int] = Query(default=[]),
    search: Optional[str] = Query(default=None, max_length=200),
) -> List[VideoResponse]:
    """List published videos, newest first. A video matches tag_ids if it has any of them."""
    rows = await catalog.list_videos(VideoFilter.public(category_id=category_id, search=search, tag_ids=tag_ids))
    return [VideoResponse(**row) for row in rows]


@app.get("/api/videos/{slug}")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def get_video(request: Request, slug: str) -> VideoResponse:
    """Get a single published video by slug."""
    # Validate slug to prevent path traversal attacks
    if not validate_slug(slug):
        raise HTTPException(status_code=400, detail="Invalid video slug")
    row = await catalog.get_video_by_slug(slug, status=VideoStatus.PUBLISHED)
    return VideoResponse(**row)


@app.get("/api/videos/{video_id}/tags")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def get_video_tags(request: Request, video_id: int) -> List[TagResponse]:
    await catalog.get_video_by_id(video_id, status=VideoStatus.PUBLISHED)
    return [TagResponse(**row) for row in await catalog.get_video_tags(video_id)]


@app.post("/api/videos/{video_id}/views")
@limiter.limit(RATE_LIMIT_PUBLIC_VIEWS)
async def increment_views(request: Request, video_id: int) -> ViewCountResponse:
    """Count one view of a published video. Views are not deduplicated."""
    await catalog.get_video_by_id(video_id, status=VideoStatus.PUBLISHED)
    view_count = await catalog.increment_video_views(video_id)
    return ViewCountResponse(view_count=view_count)


# ============ Categories & Tags ============


@app.get("/api/categories")
@limiter.limit(RATE_LIMIT_PUBLIC_VIDEOS_LIST)
async def list_categories(request: Request) -> List[CategoryResponse]:
    return [CategoryResponse(**row) for row in await catalog.list_categories()]


@app.get("/api/tags")
@limiter.limit(RATE_LIMIT_PUBLIC_VIDEOS_LIST)
async def list_tags(request: Request) -> List[TagResponse]:
    return [TagResponse(**row) for row in await catalog.list_tags()]


# ============ Auth ============


def _set_refresh_cookie(response: Response, raw: str):
    # SameSite=Lax allows the cookie to be sent with top-level navigations
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=raw,
        httponly=True,
        secure=SECURE_COOKIES,
        samesite="lax",
        max_age=REFRESH_TOKEN_EXPIRY_DAYS * 24 * 3600,
        path="/",
    )


def _clear_refresh_cookie(response: Response):
    response.delete_cookie(
        key=REFRESH_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=SECURE_COOKIES,
        samesite="lax",
    )


def _token_response(user: dict) -> TokenResponse:
    access_token, expires_in = auth.create_access_token(user)
    return TokenResponse(access_token=access_token, expires_in=expires_in, user=UserResponse(**user))


@app.post("/api/auth/login")
@limiter.limit(RATE_LIMIT_AUTH)
async def auth_login(request: Request, response: Response, data: LoginRequest) -> TokenResponse:
    """
    Exchange an identity provider authorization code for a session.

    Returns a bearer access token and sets the HttpOnly refresh cookie.
    """
    client_ip = get_real_ip(request)
    try:
        ident = await identity.exchange_code(data.code)
    except identity.IdentityProviderError as e:
        reason = "invalid_code" if e.status_code == 401 else "provider_unavailable"
        auth.security_logger.warning(
            "Login failed",
            extra={"event": "login_failure", "reason": reason, "client_ip": client_ip},
        )
        raise

    user = await auth.upsert_user(ident)
    raw = await auth.issue_refresh_token(user["id"], ip_address=client_ip, user_agent=request.headers.get("user-agent"))
    _set_refresh_cookie(response, raw)

    auth.security_logger.info(
        "Login successful",
        extra={"event": "login_success", "user_id": user["id"], "client_ip": client_ip},
    )
    return _token_response(user)


@app.post("/api/auth/refresh")
@limiter.limit(RATE_LIMIT_AUTH_REFRESH)
async def auth_refresh(request: Request, response: Response) -> TokenResponse:
    """Rotate the refresh cookie and issue a new access token."""
    raw = request.cookies.get(REFRESH_COOKIE_NAME, "")
    if not raw:
        raise HTTPException(status_code=401, detail="Session expired")

    client_ip = get_real_ip(request)
    try:
        user, new_raw = await auth.rotate_refresh_token(
            raw, ip_address=client_ip, user_agent=request.headers.get("user-agent")
        )
    except auth.InvalidRefreshToken as e:
        auth.security_logger.warning(
            "Refresh failed",
            extra={"event": "refresh_failure", "reason": e.reason, "client_ip": client_ip},
        )
        failure = JSONResponse(status_code=401, content={"detail": "Session expired"})
        _clear_refresh_cookie(failure)
        return failure

    _set_refresh_cookie(response, new_raw)
    return _token_response(user)


@app.get("/api/auth/me")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def auth_me(request: Request) -> Optional[UserResponse]:
    """The signed-in user, or null when the bearer token is missing or invalid."""
    user = await auth.get_user_for_token(auth.parse_bearer(request.headers.get("authorization")))
    return UserResponse(**user) if user else None


@app.post("/api/auth/logout")
async def auth_logout(request: Request, response: Response):
    """Revoke the refresh token and clear its cookie."""
    raw = request.cookies.get(REFRESH_COOKIE_NAME, "")
    if raw:
        await auth.revoke_refresh_token(raw)
        auth.security_logger.info(
            "Logout",
            extra={"event": "logout", "client_ip": get_real_ip(request)},
        )
    _clear_refresh_cookie(response)
    return {"success": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PUBLIC_PORT)
