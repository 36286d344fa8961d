"""
Pytest fixtures for Showcase tests.
Provides test database, test clients, sample data and bearer tokens.

Each test gets its own file-backed SQLite database.
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator

import pytest
import sqlalchemy as sa
from databases import Database

# Set up the environment BEFORE importing config
os.environ["SHOWCASE_TEST_MODE"] = "1"
os.environ["SHOWCASE_DATABASE_URL"] = ""
os.environ["SHOWCASE_RATE_LIMIT_ENABLED"] = "false"
os.environ["SHOWCASE_SECURE_COOKIES"] = "false"
os.environ.setdefault("SHOWCASE_JWT_SECRET", "test-jwt-secret-with-enough-entropy-123456")

from api.database import (  # noqa: E402
    categories,
    metadata,
    tags,
    users,
    video_tags,
    videos,
)
from api.enums import UserRole, VideoStatus  # noqa: E402

ADMIN_OPEN_ID = "owner-open-id"


def _create_tables(db_url: str) -> None:
    """Create all tables in the test database."""
    engine = sa.create_engine(db_url)
    metadata.create_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a test database file and return its URL."""
    db_url = f"sqlite:///{tmp_path}/test.db"
    _create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path, monkeypatch) -> Path:
    """Point local object storage at a temporary directory."""
    from api import storage

    media_dir = tmp_path / "media"
    media_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setattr(storage, "STORAGE_BACKEND", "local")
    monkeypatch.setattr(storage, "STORAGE_PATH", media_dir)
    return media_dir


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Connect to the per-test database. Used to seed and inspect rows."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
async def catalog_database(test_database: Database, monkeypatch) -> Database:
    """
    Make the test database the one api.catalog and api.auth talk to.

    For tests that call the data layer directly, without an app client.
    """
    import api.database

    monkeypatch.setattr(api.database, "database", test_database)
    return test_database


async def _insert_user(database: Database, open_id: str, name: str, role: UserRole) -> dict:
    now = datetime.now(timezone.utc)
    user_id = await database.execute(
        users.insert().values(
            open_id=open_id,
            name=name,
            email=f"{open_id}@example.com",
            login_method="oauth",
            role=role.value,
            created_at=now,
            updated_at=now,
            last_signed_in=now,
        )
    )
    return {
        "id": user_id,
        "open_id": open_id,
        "name": name,
        "email": f"{open_id}@example.com",
        "login_method": "oauth",
        "role": role.value,
        "created_at": now,
        "updated_at": now,
        "last_signed_in": now,
    }


@pytest.fixture(scope="function")
async def admin_user(test_database: Database) -> dict:
    """Create an admin user."""
    return await _insert_user(test_database, ADMIN_OPEN_ID, "Owner", UserRole.ADMIN)


@pytest.fixture(scope="function")
async def sample_user(test_database: Database) -> dict:
    """Create a regular (non-admin) user."""
    return await _insert_user(test_database, "viewer-open-id", "Viewer", UserRole.USER)


@pytest.fixture(scope="function")
async def sample_category(test_database: Database) -> dict:
    """Create a sample category for testing."""
    now = datetime.now(timezone.utc)
    result = await test_database.execute(
        categories.insert().values(
            name="Test Category",
            slug="test-category",
            description="A test category",
            created_at=now,
            updated_at=now,
        )
    )
    return {
        "id": result,
        "name": "Test Category",
        "slug": "test-category",
        "description": "A test category",
        "created_at": now,
    }


@pytest.fixture(scope="function")
async def sample_tag(test_database: Database) -> dict:
    """Create a sample tag for testing."""
    now = datetime.now(timezone.utc)
    result = await test_database.execute(tags.insert().values(name="Tutorial", slug="tutorial", created_at=now))
    return {"id": result, "name": "Tutorial", "slug": "tutorial", "created_at": now}


async def insert_video(
    database: Database,
    uploaded_by: int,
    title: str,
    slug: str,
    status: VideoStatus = VideoStatus.PUBLISHED,
    category_id=None,
    description: str = "",
    created_at=None,
    tag_ids=(),
) -> int:
    """Insert a video row (and its tag rows) directly."""
    now = created_at or datetime.now(timezone.utc)
    video_id = await database.execute(
        videos.insert().values(
            title=title,
            slug=slug,
            description=description,
            video_url=f"/media/videos/{slug}.mp4",
            video_key=f"videos/{slug}.mp4",
            category_id=category_id,
            uploaded_by=uploaded_by,
            status=status.value,
            view_count=0,
            created_at=now,
            updated_at=now,
        )
    )
    for tag_id in tag_ids:
        await database.execute(video_tags.insert().values(video_id=video_id, tag_id=tag_id, created_at=now))
    return video_id


@pytest.fixture(scope="function")
async def sample_video(test_database: Database, admin_user: dict, sample_category: dict, sample_tag: dict) -> dict:
    """Create a published, categorized, tagged video."""
    video_id = await insert_video(
        test_database,
        admin_user["id"],
        "Test Video",
        "test-video",
        category_id=sample_category["id"],
        description="A test video description",
        tag_ids=[sample_tag["id"]],
    )
    return {
        "id": video_id,
        "title": "Test Video",
        "slug": "test-video",
        "description": "A test video description",
        "category_id": sample_category["id"],
        "uploaded_by": admin_user["id"],
        "status": VideoStatus.PUBLISHED,
        "tag_ids": [sample_tag["id"]],
    }


@pytest.fixture(scope="function")
async def sample_draft_video(test_database: Database, admin_user: dict) -> dict:
    """Create a draft video that the public API must not expose."""
    video_id = await insert_video(test_database, admin_user["id"], "Draft Video", "draft-video", VideoStatus.DRAFT)
    return {"id": video_id, "title": "Draft Video", "slug": "draft-video", "status": VideoStatus.DRAFT}


# ============================================================================
# Tokens
# ============================================================================


def bearer_headers(user: dict) -> dict:
    """Authorization header carrying a fresh access token for a user row."""
    from api.auth import create_access_token

    token, _ = create_access_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def admin_headers(admin_user: dict) -> dict:
    return bearer_headers(admin_user)


@pytest.fixture(scope="function")
def user_headers(sample_user: dict) -> dict:
    return bearer_headers(sample_user)


# ============================================================================
# Test Client Fixtures (require patching config)
# ============================================================================


@pytest.fixture(scope="function")
def public_client(test_db_url: str, monkeypatch):
    """
    Create a test client for the public API.
    The app manages its own database connection through its lifespan.
    """
    import importlib
    import sys

    from fastapi.testclient import TestClient

    # Patch config before importing app
    import config

    monkeypatch.setattr(config, "DATABASE_URL", test_db_url)

    # Reload api.database to create a new Database instance with the test URL
    if "api.database" in sys.modules:
        importlib.reload(sys.modules["api.database"])

    # Force reload the public module to pick up the new database
    if "api.public" in sys.modules:
        importlib.reload(sys.modules["api.public"])

    from api.public import app

    # Create test client with lifespan so the app manages its own database
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="function")
def admin_client(test_db_url: str, test_storage: Path, monkeypatch):
    """
    Create a test client for the admin API.
    The app manages its own database connection through its lifespan.
    """
    import importlib
    import sys

    from fastapi.testclient import TestClient

    import config

    monkeypatch.setattr(config, "DATABASE_URL", test_db_url)

    if "api.database" in sys.modules:
        importlib.reload(sys.modules["api.database"])

    if "api.admin" in sys.modules:
        importlib.reload(sys.modules["api.admin"])

    from api.admin import app

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
