"""
Admin API - manages videos, uploads, categories, tags and users.
Runs on port 9001 (not exposed externally).

Every /api route requires a bearer access token of a user whose role is admin.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter

from api import auth, catalog
from api.audit import AuditAction, log_audit
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    get_request_id,
    register_exception_handlers,
)
from api.database import configure_database, database
from api.db_retry import DatabaseRetryableError
from api.enums import UserRole, VideoStatus
from api.errors import DatabaseUnavailableError, InvalidOperationError
from api.queries import VideoFilter
from api.schemas import (
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    TagCreate,
    TagResponse,
    TagUpdate,
    UploadRequest,
    UploadResponse,
    UserCountResponse,
    UserResponse,
    UserRoleUpdate,
    VideoCreate,
    VideoCreatedResponse,
    VideoResponse,
    VideoTagsUpdate,
    VideoUpdate,
)
from api.storage import build_object_key, decode_upload, get_object_store
from config import (
    ADMIN_CORS_ALLOWED_ORIGINS,
    ADMIN_PORT,
    MAX_THUMBNAIL_UPLOAD_SIZE,
    MAX_UPLOAD_SIZE,
    RATE_LIMIT_ADMIN_DEFAULT,
    RATE_LIMIT_ADMIN_UPLOAD,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
)

logger = logging.getLogger(__name__)

# Initialize rate limiter for admin API
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


class AdminAuthMiddleware:
    """
    Middleware to protect Admin API endpoints.

    All /api/* paths (except CORS preflight) require "Authorization: Bearer <jwt>":
    - no token at all: 403, the caller is anonymous
    - malformed, expired or non-access token: 401, so clients refresh and retry
    - valid token whose user is gone or is not an admin: 403

    The check runs before routing, so a rejected request never reaches the
    catalog. On success the user row is available as request.state.user.

    Paths that are always allowed (no auth required):
    - /health (monitoring)
    """

    def __init__(self, app):
        self.app = app

    async def _reject(self, scope, receive, send, status_code: int, detail: str):
        response = JSONResponse(status_code=status_code, content={"detail": detail})
        await response(scope, receive, send)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "")

        # Skip auth for non-API paths
        if not path.startswith("/api"):
            await self.app(scope, receive, send)
            return

        # Skip auth for OPTIONS (CORS preflight) requests
        if method == "OPTIONS":
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        client_ip = client[0] if client else "unknown"

        headers = dict(scope.get("headers", []))
        token = auth.parse_bearer(headers.get(b"authorization", b"").decode("utf-8", errors="ignore"))

        if not token:
            auth.security_logger.warning(
                "Admin API access denied: no credentials",
                extra={"event": "auth_failure", "reason": "no_credentials", "path": path, "client_ip": client_ip},
            )
            await self._reject(scope, receive, send, 403, "Admin access required")
            return

        try:
            claims = auth.decode_access_token(token)
        except auth.InvalidAccessToken as e:
            auth.security_logger.info(
                "Admin API auth failed: invalid access token",
                extra={"event": "auth_failure", "reason": "invalid_token", "path": path, "client_ip": client_ip},
            )
            logger.debug(f"Rejected access token: {e}")
            await self._reject(scope, receive, send, 401, "Session expired")
            return

        # Role is read from the users table; the role claim in the token is informational
        try:
            user = await catalog.get_user_by_id(claims["user_id"])
        except (DatabaseUnavailableError, DatabaseRetryableError) as e:
            logger.error(f"Admin auth could not load user {claims['user_id']}: {e}")
            response = JSONResponse(
                status_code=503,
                content={"detail": "Database temporarily unavailable, please retry"},
                headers={"Retry-After": "1"},
            )
            await response(scope, receive, send)
            return

        if user is None or user["role"] != UserRole.ADMIN.value:
            auth.security_logger.warning(
                "Admin API access denied: not an admin",
                extra={
                    "event": "auth_failure",
                    "reason": "not_admin" if user else "unknown_user",
                    "user_id": claims["user_id"],
                    "path": path,
                    "client_ip": client_ip,
                },
            )
            await self._reject(scope, receive, send, 403, "Admin access required")
            return

        scope.setdefault("state", {})["user"] = user
        await self.app(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    # Warn about in-memory rate limiting limitations
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "SHOWCASE_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    if database is None:
        logger.warning("SHOWCASE_DATABASE_URL is empty; admin requests will answer 503")
        yield
        return

    await database.connect()
    await configure_database()
    await auth.cleanup_expired_refresh_tokens()
    yield
    await database.disconnect()


app = FastAPI(title="Showcase Admin", description="Video catalog management API", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
register_exception_handlers(app)


@app.exception_handler(InvalidOperationError)
async def invalid_operation_handler(request: Request, exc: InvalidOperationError):
    return JSONResponse(status_code=400, content={"detail": exc.message})


# Authentication middleware - rejected requests never reach the route handlers
app.add_middleware(AdminAuthMiddleware)

# Added after auth so that 401/403 responses also carry security headers and a request id
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)

# CORS middleware (outermost; 401/403 responses also carry CORS headers)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ADMIN_CORS_ALLOWED_ORIGINS,
    allow_credentials="*" not in ADMIN_CORS_ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["X-Request-ID"],
)


def _current_user(request: Request) -> Dict[str, Any]:
    return request.state.user


def _audit(request: Request, action: AuditAction, **fields):
    log_audit(
        action,
        actor_id=_current_user(request)["id"],
        client_ip=get_real_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=get_request_id(request),
        **fields,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
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
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_all_videos(
    request: Request,
    status: Optional[VideoStatus] = None,
    category_id: Optional[int] = None,
    tag_ids: List[int] = Query(default=[]),
    search: Optional[str] = Query(default=None, max_length=200),
) -> List[VideoResponse]:
    """List videos in any status. Omitting status returns drafts and archived videos too."""
    video_filter = VideoFilter(status=status, category_id=category_id, search=search, tag_ids=tuple(tag_ids))
    return [VideoResponse(**row) for row in await catalog.list_videos(video_filter)]


@app.get("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_video(request: Request, video_id: int) -> VideoResponse:
    return VideoResponse(**await catalog.get_video_by_id(video_id))


@app.post("/api/videos")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def create_video(request: Request, data: VideoCreate) -> VideoCreatedResponse:
    """
    Create a video record for an already uploaded file.

    The uploader is always the authenticated admin.
    """
    user = _current_user(request)
    values = data.model_dump(exclude={"tag_ids"})
    video_id = await catalog.create_video(values, uploaded_by=user["id"], tag_ids=data.tag_ids)

    _audit(
        request,
        AuditAction.VIDEO_CREATE,
        resource_type="video",
        resource_id=video_id,
        resource_name=data.slug or data.title,
        details={"status": data.status.value, "category_id": data.category_id, "tag_ids": data.tag_ids},
    )
    return VideoCreatedResponse(id=video_id)


@app.put("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_video(request: Request, video_id: int, data: VideoUpdate) -> VideoResponse:
    """
    Partially update a video.

    Only fields present in the body change. tag_ids, when present, replaces all tags.
    """
    changes = data.model_dump(exclude_unset=True, exclude={"tag_ids"})
    tag_ids = data.tag_ids if "tag_ids" in data.model_fields_set else None
    row = await catalog.update_video(video_id, changes, tag_ids=tag_ids)

    _audit(
        request,
        AuditAction.VIDEO_UPDATE,
        resource_type="video",
        resource_id=video_id,
        resource_name=row["slug"],
        details={"fields": sorted(changes), "tag_ids": tag_ids},
    )
    return VideoResponse(**row)


@app.delete("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def delete_video(request: Request, video_id: int):
    """Delete a video and its tag associations. Stored files are left in place."""
    existing = await catalog.delete_video(video_id)
    _audit(
        request,
        AuditAction.VIDEO_DELETE,
        resource_type="video",
        resource_id=video_id,
        resource_name=existing["slug"],
        details={"title": existing["title"], "video_key": existing["video_key"]},
    )
    return {"success": True}


@app.get("/api/videos/{video_id}/tags")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def get_video_tags(request: Request, video_id: int) -> List[TagResponse]:
    await catalog.get_video_by_id(video_id)
    return [TagResponse(**row) for row in await catalog.get_video_tags(video_id)]


@app.put("/api/videos/{video_id}/tags")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def set_video_tags(request: Request, video_id: int, data: VideoTagsUpdate) -> List[TagResponse]:
    """Set tags for a video (replaces all existing tags)."""
    rows = await catalog.set_video_tags(video_id, data.tag_ids)
    _audit(
        request,
        AuditAction.VIDEO_TAGS_UPDATE,
        resource_type="video",
        resource_id=video_id,
        details={"tag_ids": data.tag_ids},
    )
    return [TagResponse(**row) for row in rows]


# ============ Uploads ============


async def _store_upload(request: Request, data: UploadRequest, prefix: str, max_size: int) -> UploadResponse:
    user = _current_user(request)
    payload = decode_upload(data.file_data, max_size)
    key = build_object_key(prefix, user["id"], data.file_name, int(time.time() * 1000))
    url = await get_object_store().put(key, payload, data.mime_type)
    logger.info(f"Upload stored: {key} ({len(payload)} bytes, {data.mime_type})")
    return UploadResponse(url=url, key=key)


@app.post("/api/uploads/video")
@limiter.limit(RATE_LIMIT_ADMIN_UPLOAD)
async def upload_video(request: Request, data: UploadRequest) -> UploadResponse:
    """Store a base64 encoded video file and return its URL and object key."""
    result = await _store_upload(request, data, "videos", MAX_UPLOAD_SIZE)
    _audit(
        request,
        AuditAction.VIDEO_UPLOAD,
        resource_type="upload",
        resource_name=result.key,
        details={"mime_type": data.mime_type},
    )
    return result


@app.post("/api/uploads/thumbnail")
@limiter.limit(RATE_LIMIT_ADMIN_UPLOAD)
async def upload_thumbnail(request: Request, data: UploadRequest) -> UploadResponse:
    """Store a base64 encoded thumbnail image and return its URL and object key."""
    if not data.mime_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Thumbnail must be an image")
    result = await _store_upload(request, data, "thumbnails", MAX_THUMBNAIL_UPLOAD_SIZE)
    _audit(
        request,
        AuditAction.THUMBNAIL_UPLOAD,
        resource_type="upload",
        resource_name=result.key,
        details={"mime_type": data.mime_type},
    )
    return result


# ============ Categories ============


@app.get("/api/categories")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_categories(request: Request) -> List[CategoryResponse]:
    return [CategoryResponse(**row) for row in await catalog.list_categories()]


@app.post("/api/categories")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def create_category(request: Request, data: CategoryCreate) -> CategoryResponse:
    """Create a new category. The slug is derived from the name when omitted."""
    row = await catalog.create_category(data.name, slug=data.slug, description=data.description)
    _audit(
        request,
        AuditAction.CATEGORY_CREATE,
        resource_type="category",
        resource_id=row["id"],
        resource_name=row["slug"],
        details={"name": data.name},
    )
    return CategoryResponse(**row)


@app.put("/api/categories/{category_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_category(request: Request, category_id: int, data: CategoryUpdate) -> CategoryResponse:
    changes = data.model_dump(exclude_unset=True)
    row = await catalog.update_category(category_id, changes)
    _audit(
        request,
        AuditAction.CATEGORY_UPDATE,
        resource_type="category",
        resource_id=category_id,
        resource_name=row["slug"],
        details={"fields": sorted(changes)},
    )
    return CategoryResponse(**row)


@app.delete("/api/categories/{category_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def delete_category(request: Request, category_id: int):
    """Delete a category. Its videos become uncategorized."""
    existing = await catalog.delete_category(category_id)
    _audit(
        request,
        AuditAction.CATEGORY_DELETE,
        resource_type="category",
        resource_id=category_id,
        resource_name=existing["slug"],
        details={"name": existing["name"]},
    )
    return {"success": True}


# ============ Tags ============


@app.get("/api/tags")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_tags(request: Request) -> List[TagResponse]:
    return [TagResponse(**row) for row in await catalog.list_tags()]


@app.post("/api/tags")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def create_tag(request: Request, data: TagCreate) -> TagResponse:
    """Create a new tag."""
    row = await catalog.create_tag(data.name, slug=data.slug)
    _audit(
        request,
        AuditAction.TAG_CREATE,
        resource_type="tag",
        resource_id=row["id"],
        resource_name=row["slug"],
        details={"name": data.name},
    )
    return TagResponse(**row)


@app.put("/api/tags/{tag_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_tag(request: Request, tag_id: int, data: TagUpdate) -> TagResponse:
    """Rename a tag."""
    existing = await catalog.get_tag(tag_id)
    row = await catalog.update_tag(tag_id, data.model_dump(exclude_unset=True))
    _audit(
        request,
        AuditAction.TAG_UPDATE,
        resource_type="tag",
        resource_id=tag_id,
        resource_name=row["slug"],
        details={"old_name": existing["name"], "new_name": row["name"]},
    )
    return TagResponse(**row)


@app.delete("/api/tags/{tag_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def delete_tag(request: Request, tag_id: int):
    """Delete a tag. Videos with this tag will have it removed."""
    existing = await catalog.delete_tag(tag_id)
    _audit(
        request,
        AuditAction.TAG_DELETE,
        resource_type="tag",
        resource_id=tag_id,
        resource_name=existing["slug"],
        details={"name": existing["name"]},
    )
    return {"success": True}


# ============ Users ============


@app.get("/api/users")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_users(request: Request) -> List[UserResponse]:
    return [UserResponse(**row) for row in await catalog.list_users()]


@app.get("/api/users/count")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def count_users(request: Request) -> UserCountResponse:
    return UserCountResponse(count=await catalog.count_users())


@app.put("/api/users/{user_id}/role")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def update_user_role(request: Request, user_id: int, data: UserRoleUpdate) -> UserResponse:
    """Promote or demote a user. Admins cannot demote themselves."""
    if user_id == _current_user(request)["id"] and data.role != UserRole.ADMIN:
        raise HTTPException(status_code=400, detail="You cannot remove your own admin role")

    row = await catalog.update_user_role(user_id, data.role)
    if data.role != UserRole.ADMIN:
        # Outstanding sessions end at their next refresh
        await auth.revoke_user_refresh_tokens(user_id)

    _audit(
        request,
        AuditAction.USER_ROLE_UPDATE,
        resource_type="user",
        resource_id=user_id,
        resource_name=row["open_id"],
        details={"role": data.role.value},
    )
    return UserResponse(**row)


@app.delete("/api/users/{user_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def delete_user(request: Request, user_id: int):
    """Delete a user who owns no videos."""
    if user_id == _current_user(request)["id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")

    existing = await catalog.delete_user(user_id)
    _audit(
        request,
        AuditAction.USER_DELETE,
        resource_type="user",
        resource_id=user_id,
        resource_name=existing["open_id"],
    )
    return {"success": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=ADMIN_PORT)
