#!/usr/bin/env python3
"""
Showcase CLI - Command line interface for catalog management.
"""

import argparse
import asyncio
import base64
import functools
import mimetypes
import os
import sys
from pathlib import Path

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from api.errors import truncate_string
from client.session import ApiError, ApiSession, SessionExpiredError
from client.store import FileCredentialStore, resolve_api_base
from config import (
    ADMIN_API_URL,
    ADMIN_PORT,
    CREDENTIALS_PATH,
    ERROR_DETAIL_MAX_LENGTH,
    MAX_UPLOAD_SIZE,
    PUBLIC_API_URL,
    PUBLIC_PORT,
)

# Host used when the API URLs are not set explicitly
API_HOST = os.getenv("SHOWCASE_API_HOST", "")

PUBLIC_API_BASE = resolve_api_base(PUBLIC_API_URL, API_HOST, PUBLIC_PORT)
ADMIN_API_BASE = resolve_api_base(ADMIN_API_URL, API_HOST, ADMIN_PORT)

VIDEO_STATUSES = ["draft", "published", "archived"]


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def _on_expired():
    print("Your session has expired. Sign in again with: showcase login CODE")


def make_session() -> ApiSession:
    """Session against the admin API; sign-in and refresh go to the public API."""
    return ApiSession(
        ADMIN_API_BASE,
        store=FileCredentialStore(CREDENTIALS_PATH),
        refresh_url=PUBLIC_API_BASE,
        on_expired=_on_expired,
    )


def run(action, *args):
    """Run an async action with a fresh session and close it afterwards."""

    async def runner():
        async with make_session() as session:
            return await action(session, *args)

    return asyncio.run(runner())


def handle_errors(func):
    """Print command errors and exit with status 1."""

    @functools.wraps(func)
    def wrapper(args):
        try:
            return func(args)
        except SessionExpiredError:
            print("Error: Not signed in or session expired.")
            sys.exit(1)
        except ApiError as e:
            if e.status_code == 0:
                print(f"Error: Could not connect to the API ({e.message})")
                print("Make sure the public and admin servers are running.")
            elif e.status_code == 403:
                print("Error: Admin access required. Sign in with an admin account.")
            else:
                print(f"Error: API error ({e.status_code}): {truncate_string(e.message, ERROR_DETAIL_MAX_LENGTH)}")
            sys.exit(1)
        except CLIError as e:
            print(f"Error: {e}")
            sys.exit(1)
        except Exception as e:
            print(f"Unexpected error: {e}")
            sys.exit(1)

    return wrapper


def validate_file(file_path: Path) -> int:
    """
    Validate file exists, is readable and fits the upload limit.

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If the file is missing, unreadable, empty or too large
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    if file_size > MAX_UPLOAD_SIZE:
        max_size_mb = MAX_UPLOAD_SIZE / (1024 * 1024)
        file_size_mb = file_size / (1024 * 1024)
        raise CLIError(f"File too large ({file_size_mb:.1f} MB). Maximum upload size is {max_size_mb:.0f} MB")

    return file_size


def _spinner() -> Progress:
    return Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), TimeElapsedColumn())


async def find_category_id(session: ApiSession, name_or_slug: str):
    """Look up a category by name (case-insensitive) or slug."""
    for cat in await session.get_json("/api/categories"):
        if cat["name"].lower() == name_or_slug.lower() or cat["slug"] == name_or_slug:
            return cat["id"]
    return None


# ============ Auth ============


@handle_errors
def cmd_login(args):
    """Sign in with an authorization code from the identity provider."""
    user = run(lambda session: session.login(args.code))
    print(f"Signed in as {user.get('name') or user['open_id']} (role: {user['role']})")


@handle_errors
def cmd_logout(args):
    """Sign out and forget the stored credentials."""
    run(lambda session: session.logout())
    print("Signed out.")


@handle_errors
def cmd_whoami(args):
    """Show the signed-in user."""
    user = run(lambda session: session.me())
    if not user:
        print("Not signed in.")
        return
    print(f"ID:     {user['id']}")
    print(f"Name:   {user.get('name') or '-'}")
    print(f"Email:  {user.get('email') or '-'}")
    print(f"Role:   {user['role']}")


# ============ Videos ============


@handle_errors
def cmd_list(args):
    """List videos."""
    params = {}
    if args.status:
        params["status"] = args.status
    if args.search:
        params["search"] = args.search
    if args.category_id:
        params["category_id"] = args.category_id
    if args.tag_id:
        params["tag_ids"] = args.tag_id

    videos_list = run(lambda session: session.get_json("/api/videos", params=params))
    if not videos_list:
        print("No videos found.")
        return

    print(f"{'ID':<5} {'Status':<10} {'Views':>7}  {'Title':<40} {'Slug':<30}")
    print("-" * 96)
    for v in videos_list:
        title = v["title"][:38] + ".." if len(v["title"]) > 40 else v["title"]
        slug = v["slug"][:28] + ".." if len(v["slug"]) > 30 else v["slug"]
        print(f"{v['id']:<5} {v['status']:<10} {v['view_count']:>7}  {title:<40} {slug:<30}")


async def _upload(session: ApiSession, args, file_path: Path, file_size: int) -> dict:
    mime_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    title = args.title or file_path.stem.replace("-", " ").replace("_", " ").title()

    category_id = None
    if args.category:
        category_id = await find_category_id(session, args.category)
        if category_id is None:
            print(f"Warning: Category '{args.category}' not found, uploading without category")

    with _spinner() as progress:
        task_id = progress.add_task(f"Uploading {file_path.name}...", total=None)
        encoded = base64.b64encode(file_path.read_bytes()).decode("ascii")
        stored = await session.post_json(
            "/api/uploads/video",
            json={"file_name": file_path.name, "file_data": encoded, "mime_type": mime_type},
        )
        progress.update(task_id, description="Creating video record...")

        payload = {
            "title": title,
            "description": args.description or None,
            "video_url": stored["url"],
            "video_key": stored["key"],
            "file_size": file_size,
            "mime_type": mime_type,
            "category_id": category_id,
            "status": args.status,
        }
        if args.tag_id:
            payload["tag_ids"] = args.tag_id
        created = await session.post_json("/api/videos", json=payload)

    return {"id": created["id"], "title": title, "url": stored["url"]}


@handle_errors
def cmd_upload(args):
    """Upload a video file and create its catalog entry."""
    file_path = Path(args.file)
    file_size = validate_file(file_path)

    print(f"Uploading: {file_path.name}")
    result = run(_upload, args, file_path, file_size)
    print("Success! Video created.")
    print(f"  ID:    {result['id']}")
    print(f"  Title: {result['title']}")
    print(f"  URL:   {result['url']}")


@handle_errors
def cmd_delete(args):
    """Delete a video."""
    run(lambda session: session.delete_json(f"/api/videos/{args.video_id}"))
    print(f"Deleted video {args.video_id}")


# ============ Categories & Tags ============


@handle_errors
def cmd_categories(args):
    """List or create categories."""
    if args.create:
        cat = run(
            lambda session: session.post_json(
                "/api/categories", json={"name": args.create, "description": args.description or None}
            )
        )
        print(f"Created category: {cat['name']} (slug: {cat['slug']})")
        return

    cats = run(lambda session: session.get_json("/api/categories"))
    if not cats:
        print("No categories found.")
        return

    print(f"{'ID':<5} {'Name':<30} {'Slug':<30}")
    print("-" * 66)
    for c in cats:
        print(f"{c['id']:<5} {c['name']:<30} {c['slug']:<30}")


@handle_errors
def cmd_tags(args):
    """List or create tags."""
    if args.create:
        tag = run(lambda session: session.post_json("/api/tags", json={"name": args.create}))
        print(f"Created tag: {tag['name']} (slug: {tag['slug']})")
        return

    tag_list = run(lambda session: session.get_json("/api/tags"))
    if not tag_list:
        print("No tags found.")
        return

    print(f"{'ID':<5} {'Name':<30} {'Slug':<30}")
    print("-" * 66)
    for t in tag_list:
        print(f"{t['id']:<5} {t['name']:<30} {t['slug']:<30}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="showcase", description="Showcase CLI - Manage your video catalog")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Auth commands
    login_parser = subparsers.add_parser("login", help="Sign in with an authorization code")
    login_parser.add_argument("code", help="Authorization code from the identity provider")
    login_parser.set_defaults(func=cmd_login)

    logout_parser = subparsers.add_parser("logout", help="Sign out")
    logout_parser.set_defaults(func=cmd_logout)

    whoami_parser = subparsers.add_parser("whoami", help="Show the signed-in user")
    whoami_parser.set_defaults(func=cmd_whoami)

    # List command
    list_parser = subparsers.add_parser("list", help="List videos")
    list_parser.add_argument("-s", "--status", choices=VIDEO_STATUSES, help="Filter by status")
    list_parser.add_argument("--search", help="Search title and description")
    list_parser.add_argument("--category-id", type=positive_int, help="Filter by category ID")
    list_parser.add_argument(
        "--tag-id", type=positive_int, action="append", help="Filter by tag ID (repeat to match any of several)"
    )
    list_parser.set_defaults(func=cmd_list)

    # Upload command
    upload_parser = subparsers.add_parser("upload", help="Upload a video file")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.add_argument("-t", "--title", help="Video title (default: filename)")
    upload_parser.add_argument("-d", "--description", help="Video description")
    upload_parser.add_argument("-c", "--category", help="Category name or slug")
    upload_parser.add_argument("--status", choices=VIDEO_STATUSES, default="published", help="Initial status")
    upload_parser.add_argument("--tag-id", type=positive_int, action="append", help="Tag ID (repeatable)")
    upload_parser.set_defaults(func=cmd_upload)

    # Categories command
    cat_parser = subparsers.add_parser("categories", help="List or create categories")
    cat_parser.add_argument("--create", metavar="NAME", help="Create a new category")
    cat_parser.add_argument("-d", "--description", help="Category description (with --create)")
    cat_parser.set_defaults(func=cmd_categories)

    # Tags command
    tags_parser = subparsers.add_parser("tags", help="List or create tags")
    tags_parser.add_argument("--create", metavar="NAME", help="Create a new tag")
    tags_parser.set_defaults(func=cmd_tags)

    # Delete command
    del_parser = subparsers.add_parser("delete", help="Delete a video")
    del_parser.add_argument("video_id", type=positive_int, help="Video ID to delete")
    del_parser.set_defaults(func=cmd_delete)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
