"""
Catalog data access layer.

All reads and writes of videos, categories, tags and users go through these
functions; the public and admin apps only validate input, authorize, and
translate results. Lookups that miss raise NotFoundError, unique collisions
raise DuplicateError, and every multi-statement write runs in a single
transaction so it either fully applies or not at all.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from slugify import slugify

from api.database import categories, refresh_tokens, require_database, tags, users, video_tags, videos
from api.db_retry import fetch_all_with_retry, fetch_one_with_retry, fetch_val_with_retry, with_db_retry
from api.enums import UserRole, VideoStatus
from api.errors import DuplicateError, InvalidOperationError, NotFoundError, is_unique_violation
from api.queries import VideoFilter, filter_by_tags

logger = logging.getLogger(__name__)

# Columns an admin may set directly; id, view_count, uploaded_by and timestamps are server-owned
VIDEO_WRITABLE_FIELDS = (
    "title",
    "slug",
    "description",
    "video_url",
    "video_key",
    "thumbnail_url",
    "thumbnail_key",
    "duration",
    "file_size",
    "mime_type",
    "category_id",
    "status",
)

VIDEO_ORDER = (videos.c.created_at.desc(), videos.c.id.desc())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_dict(row) -> Optional[Dict[str, Any]]:
    return dict(row._mapping) if row is not None else None


async def _unique_slug(table: sa.Table, text: str, max_length: int, fallback: str, exclude_id=None) -> str:
    """
    Derive a slug from text that is not yet used in table.

    Collisions get a numeric suffix: intro, intro-1, intro-2, ...
    """
    base = slugify(text, max_length=max_length - 6) or fallback
    query = sa.select(table.c.slug).where(sa.or_(table.c.slug == base, table.c.slug.like(f"{base}-%")))
    if exclude_id is not None:
        query = query.where(table.c.id != exclude_id)
    taken = {row["slug"] for row in await fetch_all_with_retry(query)}
    slug = base
    counter = 0
    while slug in taken:
        counter += 1
        slug = f"{base}-{counter}"
    return slug


async def _ensure_slug_free(table: sa.Table, slug: str, resource: str, exclude_id=None):
    query = sa.select(table.c.id).where(table.c.slug == slug)
    if exclude_id is not None:
        query = query.where(table.c.id != exclude_id)
    if await fetch_one_with_retry(query):
        raise DuplicateError(resource, "slug")


async def _ensure_name_free(table: sa.Table, name: str, resource: str, exclude_id=None):
    query = sa.select(table.c.id).where(table.c.name == name)
    if exclude_id is not None:
        query = query.where(table.c.id != exclude_id)
    if await fetch_one_with_retry(query):
        raise DuplicateError(resource, "name")


async def _ensure_category_exists(category_id: Optional[int]):
    if category_id is None:
        return
    if not await fetch_one_with_retry(sa.select(categories.c.id).where(categories.c.id == category_id)):
        raise NotFoundError("Category", category_id)


def _video_values(data: Mapping[str, Any]) -> Dict[str, Any]:
    values = {key: data[key] for key in VIDEO_WRITABLE_FIELDS if key in data}
    if values.get("status") is not None:
        values["status"] = VideoStatus(values["status"]).value
    return values


# ============ Videos ============


async def list_videos(video_filter: Optional[VideoFilter] = None) -> List[Dict[str, Any]]:
    """
    List videos matching the filter, newest first.

    The tag filter is applied after the base query: only when tag ids are given
    is the join table read, and a video is kept if it has any of those tags.
    """
    video_filter = video_filter or VideoFilter()
    query = video_filter.apply(videos.select()).order_by(*VIDEO_ORDER)
    rows = [_as_dict(row) for row in await fetch_all_with_retry(query)]

    if not video_filter.has_tag_filter or not rows:
        return rows

    tag_rows = await fetch_all_with_retry(video_filter.tag_rows_query([row["id"] for row in rows]))
    return filter_by_tags(rows, tag_rows)


async def get_video_by_id(video_id: int, status: Optional[VideoStatus] = None) -> Dict[str, Any]:
    query = videos.select().where(videos.c.id == video_id)
    if status is not None:
        query = query.where(videos.c.status == VideoStatus(status).value)
    row = await fetch_one_with_retry(query)
    if row is None:
        raise NotFoundError("Video", video_id)
    return _as_dict(row)


async def get_video_by_slug(slug: str, status: Optional[VideoStatus] = None) -> Dict[str, Any]:
    query = videos.select().where(videos.c.slug == slug)
    if status is not None:
        query = query.where(videos.c.status == VideoStatus(status).value)
    row = await fetch_one_with_retry(query)
    if row is None:
        raise NotFoundError("Video", slug)
    return _as_dict(row)


async def _check_tag_ids(tag_ids: Sequence[int]) -> List[int]:
    """Deduplicate tag ids (keeping order) and make sure they all exist."""
    unique_ids = list(dict.fromkeys(tag_ids))
    if not unique_ids:
        return unique_ids
    rows = await fetch_all_with_retry(sa.select(tags.c.id).where(tags.c.id.in_(unique_ids)))
    missing = set(unique_ids) - {row["id"] for row in rows}
    if missing:
        raise NotFoundError("Tag", sorted(missing))
    return unique_ids


async def _replace_video_tags(video_id: int, tag_ids: List[int]):
    """Delete-then-insert the join rows. Caller owns the transaction."""
    database = require_database()
    await database.execute(video_tags.delete().where(video_tags.c.video_id == video_id))
    if tag_ids:
        now = _now()
        await database.execute_many(
            video_tags.insert(),
            [{"video_id": video_id, "tag_id": tag_id, "created_at": now} for tag_id in tag_ids],
        )


@with_db_retry()
async def create_video(
    data: Mapping[str, Any],
    uploaded_by: int,
    tag_ids: Optional[Sequence[int]] = None,
) -> int:
    """
    Insert a video and its tag associations in one transaction.

    uploaded_by is always the authenticated caller; a value in data is ignored.
    A missing slug is derived from the title.
    """
    values = _video_values(data)
    if values.get("slug"):
        await _ensure_slug_free(videos, values["slug"], "Video")
    else:
        values["slug"] = await _unique_slug(videos, values["title"], 255, "video")
    if values.get("status") is None:
        values["status"] = VideoStatus.PUBLISHED.value
    await _ensure_category_exists(values.get("category_id"))
    checked_tags = await _check_tag_ids(tag_ids or [])

    now = _now()
    values.update(uploaded_by=uploaded_by, view_count=0, created_at=now, updated_at=now)

    database = require_database()
    try:
        async with database.transaction():
            video_id = await database.execute(videos.insert().values(**values))
            if checked_tags:
                await _replace_video_tags(video_id, checked_tags)
    except Exception as e:
        if is_unique_violation(e, column="slug"):
            raise DuplicateError("Video", "slug")
        raise

    logger.info(f"Created video {video_id} ({values['slug']}) with {len(checked_tags)} tags")
    return video_id


@with_db_retry()
async def update_video(
    video_id: int,
    changes: Mapping[str, Any],
    tag_ids: Optional[Sequence[int]] = None,
) -> Dict[str, Any]:
    """
    Apply a partial update and, when tag_ids is not None, replace the tags.

    Keys absent from changes are left alone. tag_ids=[] clears all tags.
    """
    await get_video_by_id(video_id)
    values = _video_values(changes)
    if values.get("slug"):
        await _ensure_slug_free(videos, values["slug"], "Video", exclude_id=video_id)
    if "category_id" in values:
        await _ensure_category_exists(values["category_id"])
    checked_tags = await _check_tag_ids(tag_ids) if tag_ids is not None else None

    if values or checked_tags is not None:
        database = require_database()
        try:
            async with database.transaction():
                if values:
                    values["updated_at"] = _now()
                    await database.execute(videos.update().where(videos.c.id == video_id).values(**values))
                if checked_tags is not None:
                    await _replace_video_tags(video_id, checked_tags)
        except Exception as e:
            if is_unique_violation(e, column="slug"):
                raise DuplicateError("Video", "slug")
            raise

    return await get_video_by_id(video_id)


@with_db_retry()
async def delete_video(video_id: int) -> Dict[str, Any]:
    """Delete a video and its join rows. Returns the deleted row."""
    existing = await get_video_by_id(video_id)
    database = require_database()
    async with database.transaction():
        await database.execute(video_tags.delete().where(video_tags.c.video_id == video_id))
        await database.execute(videos.delete().where(videos.c.id == video_id))
    logger.info(f"Deleted video {video_id} ({existing['slug']})")
    return existing


@with_db_retry()
async def increment_video_views(video_id: int) -> int:
    """
    Add one view and return the new count.

    The update is relative (view_count = view_count + 1) so concurrent callers
    never lose increments.
    """
    database = require_database()
    async with database.transaction():
        await database.execute(
            videos.update().where(videos.c.id == video_id).values(view_count=videos.c.view_count + 1)
        )
        view_count = await database.fetch_val(sa.select(videos.c.view_count).where(videos.c.id == video_id))
        if view_count is None:
            raise NotFoundError("Video", video_id)
    return view_count


async def get_video_tags(video_id: int) -> List[Dict[str, Any]]:
    query = (
        sa.select(tags.c.id, tags.c.name, tags.c.slug, tags.c.created_at)
        .select_from(video_tags.join(tags, video_tags.c.tag_id == tags.c.id))
        .where(video_tags.c.video_id == video_id)
        .order_by(tags.c.name)
    )
    return [_as_dict(row) for row in await fetch_all_with_retry(query)]


@with_db_retry()
async def set_video_tags(video_id: int, tag_ids: Sequence[int]) -> List[Dict[str, Any]]:
    """
    Replace all tags on a video. Unknown tag ids fail before anything is written.

    Runs in its own transaction; called inside another transaction it joins that one.
    """
    await get_video_by_id(video_id)
    checked_tags = await _check_tag_ids(tag_ids)
    database = require_database()
    async with database.transaction():
        await _replace_video_tags(video_id, checked_tags)
    return await get_video_tags(video_id)


# ============ Categories ============


async def list_categories() -> List[Dict[str, Any]]:
    rows = await fetch_all_with_retry(categories.select().order_by(categories.c.name))
    return [_as_dict(row) for row in rows]


async def get_category(category_id: int) -> Dict[str, Any]:
    row = await fetch_one_with_retry(categories.select().where(categories.c.id == category_id))
    if row is None:
        raise NotFoundError("Category", category_id)
    return _as_dict(row)


@with_db_retry()
async def create_category(name: str, slug: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
    await _ensure_name_free(categories, name, "Category")
    if slug:
        await _ensure_slug_free(categories, slug, "Category")
    else:
        slug = await _unique_slug(categories, name, 100, "category")

    now = _now()
    values = dict(name=name, slug=slug, description=description, created_at=now, updated_at=now)
    database = require_database()
    try:
        category_id = await database.execute(categories.insert().values(**values))
    except Exception as e:
        if is_unique_violation(e):
            raise DuplicateError("Category")
        raise
    return {"id": category_id, **values}


@with_db_retry()
async def update_category(category_id: int, changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Rename or re-describe a category. The slug follows a new name unless one is given."""
    existing = await get_category(category_id)
    values = {key: changes[key] for key in ("name", "slug", "description") if key in changes}

    if values.get("name") and values["name"] != existing["name"]:
        await _ensure_name_free(categories, values["name"], "Category", exclude_id=category_id)
        if not values.get("slug"):
            values["slug"] = await _unique_slug(categories, values["name"], 100, "category", exclude_id=category_id)
    if values.get("slug"):
        await _ensure_slug_free(categories, values["slug"], "Category", exclude_id=category_id)
    # name and slug are NOT NULL
    values = {key: value for key, value in values.items() if value is not None or key == "description"}

    if values:
        values["updated_at"] = _now()
        database = require_database()
        try:
            await database.execute(categories.update().where(categories.c.id == category_id).values(**values))
        except Exception as e:
            if is_unique_violation(e):
                raise DuplicateError("Category")
            raise
    return await get_category(category_id)


@with_db_retry()
async def delete_category(category_id: int) -> Dict[str, Any]:
    """Delete a category; its videos become uncategorized in the same transaction."""
    existing = await get_category(category_id)
    database = require_database()
    async with database.transaction():
        await database.execute(
            videos.update().where(videos.c.category_id == category_id).values(category_id=None, updated_at=_now())
        )
        await database.execute(categories.delete().where(categories.c.id == category_id))
    logger.info(f"Deleted category {category_id} ({existing['slug']})")
    return existing


# ============ Tags ============


async def list_tags() -> List[Dict[str, Any]]:
    rows = await fetch_all_with_retry(tags.select().order_by(tags.c.name))
    return [_as_dict(row) for row in rows]


async def get_tag(tag_id: int) -> Dict[str, Any]:
    row = await fetch_one_with_retry(tags.select().where(tags.c.id == tag_id))
    if row is None:
        raise NotFoundError("Tag", tag_id)
    return _as_dict(row)


@with_db_retry()
async def create_tag(name: str, slug: Optional[str] = None) -> Dict[str, Any]:
    await _ensure_name_free(tags, name, "Tag")
    if slug:
        await _ensure_slug_free(tags, slug, "Tag")
    else:
        slug = await _unique_slug(tags, name, 50, "tag")

    values = dict(name=name, slug=slug, created_at=_now())
    database = require_database()
    try:
        tag_id = await database.execute(tags.insert().values(**values))
    except Exception as e:
        if is_unique_violation(e):
            raise DuplicateError("Tag")
        raise
    return {"id": tag_id, **values}


@with_db_retry()
async def update_tag(tag_id: int, changes: Mapping[str, Any]) -> Dict[str, Any]:
    existing = await get_tag(tag_id)
    values = {key: changes[key] for key in ("name", "slug") if changes.get(key)}

    if values.get("name") and values["name"] != existing["name"]:
        await _ensure_name_free(tags, values["name"], "Tag", exclude_id=tag_id)
        if not values.get("slug"):
            values["slug"] = await _unique_slug(tags, values["name"], 50, "tag", exclude_id=tag_id)
    if values.get("slug"):
        await _ensure_slug_free(tags, values["slug"], "Tag", exclude_id=tag_id)

    if values:
        database = require_database()
        try:
            await database.execute(tags.update().where(tags.c.id == tag_id).values(**values))
        except Exception as e:
            if is_unique_violation(e):
                raise DuplicateError("Tag")
            raise
    return await get_tag(tag_id)


@with_db_retry()
async def delete_tag(tag_id: int) -> Dict[str, Any]:
    """Delete a tag. Videos with this tag will have it removed."""
    existing = await get_tag(tag_id)
    database = require_database()
    async with database.transaction():
        # Delete video_tags entries first (FK constraint)
        await database.execute(video_tags.delete().where(video_tags.c.tag_id == tag_id))
        await database.execute(tags.delete().where(tags.c.id == tag_id))
    return existing


# ============ Users ============


async def get_user_by_id(user_id: int) -> Optional[Dict[str, Any]]:
    return _as_dict(await fetch_one_with_retry(users.select().where(users.c.id == user_id)))


async def list_users() -> List[Dict[str, Any]]:
    rows = await fetch_all_with_retry(users.select().order_by(users.c.created_at.desc(), users.c.id.desc()))
    return [_as_dict(row) for row in rows]


async def count_users() -> int:
    return await fetch_val_with_retry(sa.select(sa.func.count()).select_from(users)) or 0


@with_db_retry()
async def update_user_role(user_id: int, role: UserRole) -> Dict[str, Any]:
    if await get_user_by_id(user_id) is None:
        raise NotFoundError("User", user_id)
    database = require_database()
    await database.execute(
        users.update().where(users.c.id == user_id).values(role=UserRole(role).value, updated_at=_now())
    )
    return await get_user_by_id(user_id)


@with_db_retry()
async def delete_user(user_id: int) -> Dict[str, Any]:
    """Delete a user and their refresh tokens. Users who still own videos cannot be deleted."""
    existing = await get_user_by_id(user_id)
    if existing is None:
        raise NotFoundError("User", user_id)

    owned = await fetch_val_with_retry(
        sa.select(sa.func.count()).select_from(videos).where(videos.c.uploaded_by == user_id)
    )
    if owned:
        raise InvalidOperationError("User owns videos")

    database = require_database()
    async with database.transaction():
        await database.execute(refresh_tokens.delete().where(refresh_tokens.c.user_id == user_id))
        await database.execute(users.delete().where(users.c.id == user_id))
    return existing
