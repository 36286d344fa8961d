"""
Tests for database CHECK, UNIQUE and NOT NULL constraints.

Tests that verify:
- Valid enum values are accepted by the database
- Invalid enum values are rejected at the database level
- Duplicate slugs and tag links are rejected
"""

from datetime import datetime, timezone

import pytest

from api import database
from api.enums import VideoStatus
from conftest import insert_video


def _video_values(uploaded_by: int, slug: str, status: str) -> dict:
    return dict(
        title=f"Video {slug}",
        slug=slug,
        video_url=f"/media/videos/{slug}.mp4",
        video_key=f"videos/{slug}.mp4",
        uploaded_by=uploaded_by,
        status=status,
        created_at=datetime.now(timezone.utc),
    )


class TestCheckConstraints:
    """Test CHECK constraints on enum columns."""

    @pytest.mark.asyncio
    async def test_videos_status_valid_values(self, test_database, admin_user):
        for status in VideoStatus:
            video_id = await test_database.execute(
                database.videos.insert().values(**_video_values(admin_user["id"], f"video-{status.value}", status.value))
            )
            assert video_id is not None

    @pytest.mark.asyncio
    async def test_videos_status_invalid_value(self, test_database, admin_user):
        with pytest.raises(Exception, match="(?i)check constraint"):
            await test_database.execute(
                database.videos.insert().values(**_video_values(admin_user["id"], "video-ready", "ready"))
            )

    @pytest.mark.asyncio
    async def test_users_role_invalid_value(self, test_database):
        with pytest.raises(Exception, match="(?i)check constraint"):
            await test_database.execute(database.users.insert().values(open_id="someone", role="owner"))

    @pytest.mark.asyncio
    async def test_view_count_defaults_to_zero(self, test_database, admin_user):
        video_id = await test_database.execute(
            database.videos.insert().values(**_video_values(admin_user["id"], "fresh", "draft"))
        )
        row = await test_database.fetch_one(database.videos.select().where(database.videos.c.id == video_id))
        assert row["view_count"] == 0


class TestColumnDefaults:
    """Defaults are filled in by the database when an insert leaves the column out."""

    @pytest.mark.asyncio
    async def test_video_status_and_timestamps_default(self, test_database, admin_user):
        video_id = await test_database.execute(
            database.videos.insert().values(
                title="Bare",
                slug="bare",
                video_url="/media/videos/bare.mp4",
                video_key="videos/bare.mp4",
                uploaded_by=admin_user["id"],
            )
        )
        row = await test_database.fetch_one(database.videos.select().where(database.videos.c.id == video_id))
        assert row["status"] == VideoStatus.PUBLISHED.value
        assert row["view_count"] == 0
        assert row["created_at"] is not None
        assert row["updated_at"] is not None

    @pytest.mark.asyncio
    async def test_user_role_defaults_to_user(self, test_database):
        user_id = await test_database.execute(database.users.insert().values(open_id="plain"))
        row = await test_database.fetch_one(database.users.select().where(database.users.c.id == user_id))
        assert row["role"] == "user"
        assert row["created_at"] is not None

    @pytest.mark.asyncio
    async def test_tag_link_created_at_default(self, test_database, sample_video):
        tag_id = await test_database.execute(database.tags.insert().values(name="Extra", slug="extra"))
        await test_database.execute(database.video_tags.insert().values(video_id=sample_video["id"], tag_id=tag_id))
        row = await test_database.fetch_one(
            database.video_tags.select().where(database.video_tags.c.tag_id == tag_id)
        )
        assert row["created_at"] is not None


class TestUniqueConstraints:
    @pytest.mark.asyncio
    async def test_video_slug_unique(self, test_database, admin_user):
        await insert_video(test_database, admin_user["id"], "One", "same-slug")
        with pytest.raises(Exception, match="(?i)unique"):
            await insert_video(test_database, admin_user["id"], "Two", "same-slug")

    @pytest.mark.asyncio
    async def test_video_tag_pair_unique(self, test_database, sample_video, sample_tag):
        with pytest.raises(Exception, match="(?i)unique"):
            await test_database.execute(
                database.video_tags.insert().values(video_id=sample_video["id"], tag_id=sample_tag["id"])
            )
