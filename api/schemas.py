import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from api.enums import UserRole, VideoStatus

# Lowercase words separated by single hyphens, as produced by python-slugify
SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

MAX_TAGS_PER_VIDEO = 50


def _check_slug(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not SLUG_PATTERN.match(v):
        raise ValueError("slug must contain only lowercase letters, digits and single hyphens")
    return v


# ============ Users ============


class UserResponse(BaseModel):
    id: int
    open_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    login_method: Optional[str] = None
    role: UserRole
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_signed_in: Optional[datetime] = None


class UserRoleUpdate(BaseModel):
    role: UserRole


class UserCountResponse(BaseModel):
    count: int


# ============ Auth ============


class LoginRequest(BaseModel):
    """Authorization code returned to the browser by the identity provider."""

    code: str = Field(..., min_length=1, max_length=512)
    state: Optional[str] = Field(default=None, max_length=512)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserResponse


# ============ Categories ============


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=5000)

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        return _check_slug(v)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=5000)

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        return _check_slug(v)


class CategoryResponse(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============ Tags ============


class TagCreate(BaseModel):
    """Request to create a new tag."""

    name: str = Field(..., min_length=1, max_length=50)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=50)

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        return _check_slug(v)


class TagUpdate(BaseModel):
    """Request to rename a tag. The slug follows the name unless given."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=50)

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        return _check_slug(v)


class TagResponse(BaseModel):
    """Response for a single tag."""

    id: int
    name: str
    slug: str
    created_at: Optional[datetime] = None


class VideoTagsUpdate(BaseModel):
    """Request to set tags on a video (replaces all existing tags)."""

    tag_ids: List[int] = Field(
        ..., max_length=MAX_TAGS_PER_VIDEO, description="List of tag IDs (max 50 tags per video)"
    )


# ============ Videos ============


class VideoCreate(BaseModel):
    """
    New video record. The file itself is uploaded first through /api/uploads/video;
    video_url and video_key come from that response. uploaded_by is never read from
    the payload; it is always the authenticated admin.
    """

    title: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    video_url: str = Field(..., min_length=1)
    video_key: str = Field(..., min_length=1)
    thumbnail_url: Optional[str] = None
    thumbnail_key: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=0)
    file_size: Optional[int] = Field(default=None, ge=0)
    mime_type: Optional[str] = Field(default=None, max_length=100)
    category_id: Optional[int] = None
    status: VideoStatus = VideoStatus.PUBLISHED
    tag_ids: Optional[List[int]] = Field(default=None, max_length=MAX_TAGS_PER_VIDEO)

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        return _check_slug(v)


class VideoUpdate(BaseModel):
    """
    Partial update. Only fields present in the request body are written, so an
    explicit "category_id": null uncategorizes the video while an absent key
    leaves it alone. tag_ids replaces all tags when present (an empty list clears them).
    """

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    video_url: Optional[str] = Field(default=None, min_length=1)
    video_key: Optional[str] = Field(default=None, min_length=1)
    thumbnail_url: Optional[str] = None
    thumbnail_key: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=0)
    file_size: Optional[int] = Field(default=None, ge=0)
    mime_type: Optional[str] = Field(default=None, max_length=100)
    category_id: Optional[int] = None
    status: Optional[VideoStatus] = None
    tag_ids: Optional[List[int]] = Field(default=None, max_length=MAX_TAGS_PER_VIDEO)

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        return _check_slug(v)

    @field_validator("title", "video_url", "video_key", "status")
    @classmethod
    def reject_null(cls, v):
        # These columns are NOT NULL; an explicit null is a client error
        if v is None:
            raise ValueError("field may not be null")
        return v


class VideoResponse(BaseModel):
    id: int
    title: str
    slug: str
    description: Optional[str] = None
    video_url: str
    video_key: str
    thumbnail_url: Optional[str] = None
    thumbnail_key: Optional[str] = None
    duration: Optional[int] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    view_count: int = 0
    category_id: Optional[int] = None
    uploaded_by: int
    status: VideoStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("view_count", mode="before")
    @classmethod
    def default_view_count(cls, v):
        return v if v is not None else 0


class VideoCreatedResponse(BaseModel):
    id: int


class ViewCountResponse(BaseModel):
    success: bool = True
    view_count: int


# ============ Uploads ============


class UploadRequest(BaseModel):
    """Base64 upload body proxied to the object store."""

    file_name: str = Field(..., min_length=1, max_length=255)
    file_data: str = Field(..., min_length=1, description="Base64 encoded file contents")
    mime_type: str = Field(..., min_length=1, max_length=100)


class UploadResponse(BaseModel):
    url: str
    key: str
