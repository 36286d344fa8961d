"""Tests for request ID middleware, client IP resolution and other shared API helpers."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from api import common
from api.common import ensure_utc, get_real_ip, get_request_id


class TestRequestIDMiddleware:
    """Tests for RequestIDMiddleware functionality."""

    def test_request_id_generated_when_not_provided(self, public_client):
        """Test that a request ID is generated when not provided in headers."""
        response = public_client.get("/health")

        request_id = response.headers["X-Request-ID"]
        try:
            uuid.UUID(request_id)
        except ValueError:
            pytest.fail(f"Generated request ID is not a valid UUID: {request_id}")

    def test_request_id_preserved_when_provided(self, public_client):
        """Test that an existing X-Request-ID header is preserved."""
        custom_request_id = "custom-trace-id-12345"

        response = public_client.get("/health", headers={"X-Request-ID": custom_request_id})

        assert response.headers.get("X-Request-ID") == custom_request_id

    @pytest.mark.parametrize("bad_id", ["has spaces", "<script>", "x" * 65])
    def test_unsafe_request_id_replaced(self, public_client, bad_id):
        response = public_client.get("/health", headers={"X-Request-ID": bad_id})
        assert response.headers["X-Request-ID"] != bad_id

    def test_request_id_unique_per_request(self, public_client):
        """Test that each request gets a unique request ID."""
        request_id1 = public_client.get("/health").headers.get("X-Request-ID")
        request_id2 = public_client.get("/health").headers.get("X-Request-ID")

        assert request_id1 is not None
        assert request_id1 != request_id2

    def test_request_id_in_admin_api(self, admin_client):
        """Admin API responses carry an id too, including rejected requests."""
        assert "X-Request-ID" in admin_client.get("/health").headers
        assert "X-Request-ID" in admin_client.get("/api/videos").headers


class TestGetRequestIdHelper:
    """Tests for get_request_id helper function."""

    def test_get_request_id_returns_id_from_state(self):
        mock_request = MagicMock()
        mock_request.state.request_id = "test-request-id-123"

        assert get_request_id(mock_request) == "test-request-id-123"

    def test_get_request_id_returns_none_when_not_set(self):
        mock_request = MagicMock()
        del mock_request.state.request_id  # Ensure attribute doesn't exist

        assert get_request_id(mock_request) is None


def _request(client_ip: str, forwarded=None):
    request = MagicMock()
    request.client.host = client_ip
    request.headers = {"X-Forwarded-For": forwarded} if forwarded else {}
    return request


class TestGetRealIp:
    def test_direct_client(self):
        assert get_real_ip(_request("203.0.113.9")) == "203.0.113.9"

    def test_forwarded_header_from_trusted_proxy(self, monkeypatch):
        monkeypatch.setattr(common, "TRUSTED_PROXIES", {"127.0.0.1"})
        request = _request("127.0.0.1", "198.51.100.7, 10.0.0.2")
        assert get_real_ip(request) == "198.51.100.7"

    def test_forwarded_header_from_untrusted_client_is_ignored(self, monkeypatch):
        monkeypatch.setattr(common, "TRUSTED_PROXIES", {"127.0.0.1"})
        request = _request("203.0.113.9", "198.51.100.7")
        assert get_real_ip(request) == "203.0.113.9"


class TestEnsureUtc:
    def test_none(self):
        assert ensure_utc(None) is None

    def test_naive_is_assumed_utc(self):
        result = ensure_utc(datetime(2024, 1, 1, 12, 0, 0))
        assert result == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_aware_is_converted(self):
        plus_two = timezone(timedelta(hours=2))
        result = ensure_utc(datetime(2024, 1, 1, 14, 0, 0, tzinfo=plus_two))
        assert result == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert result.tzinfo == timezone.utc
