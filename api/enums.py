"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class VideoStatus(str, Enum):
    """Visibility state of a video. Any state may be set directly by an admin."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class UserRole(str, Enum):
    """Role of a signed-in user."""

    USER = "user"
    ADMIN = "admin"


class TokenType(str, Enum):
    """Value of the "type" claim in issued JWTs."""

    ACCESS = "access"
