from typing import Optional

import sqlalchemy as sa
from databases import Database

from api.errors import DatabaseUnavailableError
from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database.
# With an empty SHOWCASE_DATABASE_URL there is no database and every data
# access raises DatabaseUnavailableError.
database: Optional[Database] = Database(DATABASE_URL) if DATABASE_URL else None
metadata = sa.MetaData()


def require_database() -> Database:
    """
    Return the connected database or raise DatabaseUnavailableError.

    Used by every data access path so a missing or disconnected backend is
    reported as unavailable instead of looking like an empty result.
    """
    if database is None:
        raise DatabaseUnavailableError("No database configured")
    if not database.is_connected:
        raise DatabaseUnavailableError("Database is not connected")
    return database


async def configure_database():
    """
    Configure database-specific settings after connection.
    PostgreSQL needs nothing; SQLite is switched to WAL so readers do not block the writer.
    """
    if database is None:
        return
    if database.url.dialect == "sqlite":
        await database.execute("PRAGMA journal_mode=WAL")


users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    # External identity from the OAuth provider; immutable once created
    sa.Column("open_id", sa.String(64), unique=True, nullable=False),
    sa.Column("name", sa.Text, nullable=True),
    sa.Column("email", sa.String(320), nullable=True),
    sa.Column("login_method", sa.String(64), nullable=True),
    sa.Column(
        "role",
        sa.String(16),
        sa.CheckConstraint("role IN ('user', 'admin')", name="ck_users_role"),
        nullable=False,
        server_default="user",
    ),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("last_signed_in", sa.DateTime(timezone=True), server_default=sa.func.now()),
)

categories = sa.Table(
    "categories",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), unique=True, nullable=False),
    sa.Column("slug", sa.String(100), unique=True, nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
)

videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("slug", sa.String(255), unique=True, nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("video_url", sa.Text, nullable=False),
    sa.Column("video_key", sa.Text, nullable=False),  # object store key
    sa.Column("thumbnail_url", sa.Text, nullable=True),
    sa.Column("thumbnail_key", sa.Text, nullable=True),
    sa.Column("duration", sa.Integer, nullable=True),  # seconds
    sa.Column("file_size", sa.BigInteger, nullable=True),  # bytes
    sa.Column("mime_type", sa.String(100), nullable=True),
    sa.Column("view_count", sa.Integer, nullable=False, server_default="0"),
    # Weak reference: deleting a category sets this to NULL (see catalog.delete_category)
    sa.Column("category_id", sa.Integer, sa.ForeignKey("categories.id"), nullable=True),
    sa.Column("uploaded_by", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('draft', 'published', 'archived')",
            name="ck_videos_status",
        ),
        nullable=False,
        server_default="published",
    ),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Index("ix_videos_status", "status"),
    sa.Index("ix_videos_category_id", "category_id"),
    sa.Index("ix_videos_created_at", "created_at"),
)

tags = sa.Table(
    "tags",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(50), unique=True, nullable=False),
    sa.Column("slug", sa.String(50), unique=True, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Index("ix_tags_slug", "slug"),
)

# Join rows are owned by the video; catalog deletes them before a video or tag row
video_tags = sa.Table(
    "video_tags",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("tag_id", sa.Integer, sa.ForeignKey("tags.id", ondelete="CASCADE"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.UniqueConstraint("video_id", "tag_id", name="uq_video_tags_video_tag"),
    sa.Index("ix_video_tags_video_id", "video_id"),
    sa.Index("ix_video_tags_tag_id", "tag_id"),
)

refresh_tokens = sa.Table(
    "refresh_tokens",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    # SHA-256 hex digest; the raw token only ever lives in the client's cookie
    sa.Column("token_hash", sa.String(64), unique=True, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("ip_address", sa.String(45), nullable=True),  # IPv6 max length
    sa.Column("user_agent", sa.String(512), nullable=True),
    sa.Index("ix_refresh_tokens_user_id", "user_id"),
    sa.Index("ix_refresh_tokens_expires_at", "expires_at"),
)


def create_tables(url: Optional[str] = None):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(url or DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
