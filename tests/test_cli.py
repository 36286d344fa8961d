"""
Tests for the CLI commands, argument parsing and error reporting.
"""

import argparse
import json
import sys
from unittest import mock

import httpx
import pytest

import cli.main
from cli.main import CLIError, build_parser, main, positive_int, validate_file
from client.session import ApiSession
from client.store import CredentialStore

ADMIN = {"id": 1, "open_id": "owner-open-id", "name": "Owner", "email": "owner@example.com", "role": "admin"}


@pytest.fixture
def api(monkeypatch):
    """
    Route CLI sessions to an in-memory API.

    Tests register handlers as routes[(method, path)] = callable(request) -> httpx.Response.
    Every request is recorded in requests.
    """

    class FakeApi:
        def __init__(self):
            self.routes = {}
            self.requests = []

        def __call__(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            handler = self.routes.get((request.method, request.url.path))
            if handler is None:
                return httpx.Response(404, json={"detail": "Not Found"})
            return handler(request)

    fake = FakeApi()
    store = CredentialStore()
    store.save("token-1", ADMIN)

    def make_session():
        return ApiSession(
            "http://admin.test",
            store=store,
            refresh_url="http://public.test",
            transport=httpx.MockTransport(fake),
        )

    monkeypatch.setattr(cli.main, "make_session", make_session)
    return fake


def _run(argv):
    main(argv)


class TestPositiveInt:
    def test_accepts_positive(self):
        assert positive_int("3") == 3

    @pytest.mark.parametrize("value", ["0", "-2"])
    def test_rejects_non_positive(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            positive_int(value)


class TestValidateFile:
    """Test the validate_file function."""

    def test_valid_file(self, tmp_path):
        test_file = tmp_path / "test_video.mp4"
        test_file.write_bytes(b"test content")

        assert validate_file(test_file) == 12

    def test_file_not_found(self, tmp_path):
        with pytest.raises(CLIError) as exc_info:
            validate_file(tmp_path / "nonexistent.mp4")
        assert "File not found" in str(exc_info.value)

    def test_path_is_directory(self, tmp_path):
        with pytest.raises(CLIError) as exc_info:
            validate_file(tmp_path)
        assert "Path is not a file" in str(exc_info.value)

    def test_file_not_readable(self, tmp_path):
        test_file = tmp_path / "test_video.mp4"
        test_file.write_bytes(b"test content")

        with mock.patch("os.access", return_value=False):
            with pytest.raises(CLIError) as exc_info:
                validate_file(test_file)
        assert "File is not readable" in str(exc_info.value)

    def test_empty_file(self, tmp_path):
        test_file = tmp_path / "empty.mp4"
        test_file.touch()

        with pytest.raises(CLIError) as exc_info:
            validate_file(test_file)
        assert "File is empty" in str(exc_info.value)

    def test_file_over_upload_limit(self, tmp_path, monkeypatch):
        monkeypatch.setattr(cli.main, "MAX_UPLOAD_SIZE", 4)
        test_file = tmp_path / "big.mp4"
        test_file.write_bytes(b"0123456789")

        with pytest.raises(CLIError) as exc_info:
            validate_file(test_file)
        assert "File too large" in str(exc_info.value)


class TestAuthCommands:
    def test_login(self, api, capsys):
        api.routes[("POST", "/api/auth/login")] = lambda request: httpx.Response(
            200, json={"access_token": "token-2", "token_type": "bearer", "expires_in": 900, "user": ADMIN}
        )

        _run(["login", "abc123"])

        assert json.loads(api.requests[0].content) == {"code": "abc123"}
        assert api.requests[0].url.host == "public.test"
        assert "Signed in as Owner (role: admin)" in capsys.readouterr().out

    def test_login_rejected(self, api, capsys):
        api.routes[("POST", "/api/auth/login")] = lambda request: httpx.Response(
            401, json={"detail": "Invalid authorization code"}
        )

        with pytest.raises(SystemExit) as exc_info:
            _run(["login", "nope"])

        assert exc_info.value.code == 1
        assert "Invalid authorization code" in capsys.readouterr().out

    def test_whoami(self, api, capsys):
        api.routes[("GET", "/api/auth/me")] = lambda request: httpx.Response(200, json=ADMIN)

        _run(["whoami"])

        out = capsys.readouterr().out
        assert "owner@example.com" in out
        assert "admin" in out

    def test_whoami_signed_out(self, api, capsys):
        api.routes[("GET", "/api/auth/me")] = lambda request: httpx.Response(200, content=b"null")

        _run(["whoami"])

        assert "Not signed in." in capsys.readouterr().out

    def test_logout(self, api, capsys):
        api.routes[("POST", "/api/auth/logout")] = lambda request: httpx.Response(200, json={"success": True})

        _run(["logout"])

        assert "Signed out." in capsys.readouterr().out


class TestCmdList:
    """Test the list command."""

    def test_list_videos_success(self, api, capsys):
        api.routes[("GET", "/api/videos")] = lambda request: httpx.Response(
            200,
            json=[
                {"id": 1, "title": "Test Video", "slug": "test-video", "status": "published", "view_count": 12},
                {
                    "id": 2,
                    "title": "Another Video with a Very Long Title That Will Be Truncated",
                    "slug": "another-video",
                    "status": "draft",
                    "view_count": 0,
                },
            ],
        )

        _run(["list"])

        out = capsys.readouterr().out
        assert "Test Video" in out
        assert "published" in out
        assert "Another Video" in out
        assert "Truncated" not in out

    def test_list_videos_empty(self, api, capsys):
        api.routes[("GET", "/api/videos")] = lambda request: httpx.Response(200, json=[])

        _run(["list"])

        assert "No videos found." in capsys.readouterr().out

    def test_list_sends_filters(self, api):
        api.routes[("GET", "/api/videos")] = lambda request: httpx.Response(200, json=[])

        _run(["list", "--status", "draft", "--search", "intro", "--tag-id", "2", "--tag-id", "5"])

        params = api.requests[0].url.params
        assert params["status"] == "draft"
        assert params["search"] == "intro"
        assert params.get_list("tag_ids") == ["2", "5"]
        assert api.requests[0].headers["authorization"] == "Bearer token-1"

    def test_list_connection_error(self, api, capsys):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        api.routes[("GET", "/api/videos")] = handler

        with pytest.raises(SystemExit) as exc_info:
            _run(["list"])

        assert exc_info.value.code == 1
        assert "Could not connect" in capsys.readouterr().out

    def test_list_forbidden(self, api, capsys):
        api.routes[("GET", "/api/videos")] = lambda request: httpx.Response(
            403, json={"detail": "Admin access required"}
        )

        with pytest.raises(SystemExit):
            _run(["list"])

        assert "Admin access required" in capsys.readouterr().out

    def test_list_session_expired(self, api, capsys):
        api.routes[("GET", "/api/videos")] = lambda request: httpx.Response(401, json={"detail": "Session expired"})
        api.routes[("POST", "/api/auth/refresh")] = lambda request: httpx.Response(
            401, json={"detail": "Missing refresh token"}
        )

        with pytest.raises(SystemExit) as exc_info:
            _run(["list"])

        assert exc_info.value.code == 1
        assert "session expired" in capsys.readouterr().out

    def test_long_error_detail_is_truncated(self, api, capsys):
        api.routes[("GET", "/api/videos")] = lambda request: httpx.Response(400, json={"detail": "x" * 5000})

        with pytest.raises(SystemExit):
            _run(["list"])

        assert len(capsys.readouterr().out) < 1000


class TestCmdCategoriesAndTags:
    def test_list_categories(self, api, capsys):
        api.routes[("GET", "/api/categories")] = lambda request: httpx.Response(
            200, json=[{"id": 1, "name": "Tutorials", "slug": "tutorials"}]
        )

        _run(["categories"])

        out = capsys.readouterr().out
        assert "Tutorials" in out
        assert "tutorials" in out

    def test_list_categories_empty(self, api, capsys):
        api.routes[("GET", "/api/categories")] = lambda request: httpx.Response(200, json=[])

        _run(["categories"])

        assert "No categories found." in capsys.readouterr().out

    def test_create_category(self, api, capsys):
        api.routes[("POST", "/api/categories")] = lambda request: httpx.Response(
            200, json={"id": 3, "name": "Music Videos", "slug": "music-videos"}
        )

        _run(["categories", "--create", "Music Videos", "-d", "Songs"])

        assert json.loads(api.requests[0].content) == {"name": "Music Videos", "description": "Songs"}
        assert "Created category: Music Videos (slug: music-videos)" in capsys.readouterr().out

    def test_create_tag(self, api, capsys):
        api.routes[("POST", "/api/tags")] = lambda request: httpx.Response(
            200, json={"id": 4, "name": "Live", "slug": "live"}
        )

        _run(["tags", "--create", "Live"])

        assert "Created tag: Live (slug: live)" in capsys.readouterr().out


class TestCmdDelete:
    def test_delete_video_success(self, api, capsys):
        api.routes[("DELETE", "/api/videos/7")] = lambda request: httpx.Response(200, json={"success": True})

        _run(["delete", "7"])

        assert "Deleted video 7" in capsys.readouterr().out

    def test_delete_video_not_found(self, api, capsys):
        api.routes[("DELETE", "/api/videos/7")] = lambda request: httpx.Response(
            404, json={"detail": "Video not found"}
        )

        with pytest.raises(SystemExit):
            _run(["delete", "7"])

        assert "Video not found" in capsys.readouterr().out


class TestCmdUpload:
    def _upload_routes(self, api):
        api.routes[("GET", "/api/categories")] = lambda request: httpx.Response(
            200, json=[{"id": 5, "name": "Tutorials", "slug": "tutorials"}]
        )
        api.routes[("POST", "/api/uploads/video")] = lambda request: httpx.Response(
            200, json={"url": "/media/videos/1/1-my_clip.mp4", "key": "videos/1/1-my_clip.mp4"}
        )
        api.routes[("POST", "/api/videos")] = lambda request: httpx.Response(200, json={"id": 42})

    def test_upload_file_not_found(self, api, capsys, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            _run(["upload", str(tmp_path / "missing.mp4")])

        assert exc_info.value.code == 1
        assert "File not found" in capsys.readouterr().out
        assert api.requests == []

    def test_upload_success(self, api, capsys, tmp_path):
        self._upload_routes(api)
        video_file = tmp_path / "my_clip.mp4"
        video_file.write_bytes(b"fake video")

        _run(["upload", str(video_file), "-c", "tutorials", "--tag-id", "3"])

        upload_body = json.loads(api.requests[1].content)
        assert upload_body["file_name"] == "my_clip.mp4"
        assert upload_body["mime_type"] == "video/mp4"

        video_body = json.loads(api.requests[2].content)
        assert video_body["title"] == "My Clip"
        assert video_body["video_key"] == "videos/1/1-my_clip.mp4"
        assert video_body["category_id"] == 5
        assert video_body["tag_ids"] == [3]
        assert video_body["file_size"] == len(b"fake video")

        out = capsys.readouterr().out
        assert "Success! Video created." in out
        assert "42" in out

    def test_upload_category_not_found(self, api, capsys, tmp_path):
        self._upload_routes(api)
        video_file = tmp_path / "clip.mp4"
        video_file.write_bytes(b"fake video")

        _run(["upload", str(video_file), "-c", "Nope"])

        assert json.loads(api.requests[-1].content)["category_id"] is None
        assert "Category 'Nope' not found" in capsys.readouterr().out


class TestMainParser:
    """Test the main argument parser."""

    @pytest.mark.parametrize("command", ["login", "upload", "list", "categories", "tags", "delete"])
    def test_command_help(self, command):
        with pytest.raises(SystemExit) as exc_info:
            main([command, "--help"])
        assert exc_info.value.code == 0

    def test_missing_command_fails(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_invalid_status_fails(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["list", "--status", "ready"])
        assert exc_info.value.code == 2

    def test_argv_fallback(self):
        with mock.patch.object(sys, "argv", ["showcase", "whoami", "--help"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 0
