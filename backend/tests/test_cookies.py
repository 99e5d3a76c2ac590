"""
Tests for session cookie handling.
"""

from datetime import timedelta

import pytest
from starlette.requests import Request
from starlette.responses import Response

from authcentral.auth import SessionCookieManager, extract_token
from authcentral.config import Settings


def make_request(headers):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }
    return Request(scope)


class TestSessionCookieManager:
    """Test cases for SessionCookieManager."""

    @pytest.fixture
    def manager(self):
        return SessionCookieManager("token", "auth.example.com", timedelta(days=7), secure=True)

    def test_attach_session_attributes(self, manager):
        cookie = manager.attach_session("jwt-value")
        assert cookie.key == "token"
        assert cookie.value == "jwt-value"
        assert cookie.max_age == 7 * 24 * 3600
        assert cookie.httponly is True
        assert cookie.secure is True
        assert cookie.samesite == "lax"
        assert cookie.domain == "auth.example.com"
        assert cookie.path == "/"

    def test_apply_sets_header(self, manager):
        response = Response()
        manager.attach_session("jwt-value").apply(response)

        header = response.headers["set-cookie"]
        assert header.startswith("token=jwt-value")
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "SameSite=lax" in header
        assert "Domain=auth.example.com" in header

    def test_clear_session_expires_cookie(self, manager):
        """Test the cleared cookie matches the session cookie but is already expired."""
        cleared = manager.clear_session()
        assert cleared.key == "token"
        assert cleared.value == ""
        assert cleared.max_age == 0
        assert cleared.expires.year == 1970
        assert cleared.domain == "auth.example.com"

        response = Response()
        cleared.apply(response)
        assert "Max-Age=0" in response.headers["set-cookie"]

    def test_secure_only_in_production(self, test_env):
        assert SessionCookieManager.from_settings(Settings()).secure is False

        test_env.setenv("ENV", "production")
        assert Settings().cookies.cookie_config["secure"] is True


class TestExtractToken:
    """Test cases for extract_token."""

    def test_bearer_header(self):
        request = make_request({"Authorization": "Bearer abc.def.ghi"})
        assert extract_token(request, "token") == "abc.def.ghi"

    def test_cookie_fallback(self):
        request = make_request({"Cookie": "token=from-cookie; other=1"})
        assert extract_token(request, "token") == "from-cookie"

    def test_header_wins_over_cookie(self):
        request = make_request({"Authorization": "Bearer from-header", "Cookie": "token=from-cookie"})
        assert extract_token(request, "token") == "from-header"

    def test_nothing_supplied(self):
        assert extract_token(make_request({}), "token") is None
