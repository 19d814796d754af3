"""Tests for the session backend and AuthContext."""
import pytest
from unittest.mock import patch

from qbo_demo.exceptions import ValidationError
from qbo_demo.session import AuthContext, InMemorySessionBackend


class TestAuthContext:
    """AuthContext construction and token formatting."""

    def test_requires_access_token(self):
        with pytest.raises(ValidationError) as exc_info:
            AuthContext(access_token="  ", realm_id="123")
        assert exc_info.value.message == "Access token is required"

    def test_requires_realm_id(self):
        with pytest.raises(ValidationError) as exc_info:
            AuthContext(access_token="abc", realm_id="")
        assert exc_info.value.message == "Realm ID is required"

    def test_bearer_prefix_added_once(self):
        """Raw and prefixed tokens produce the same header value."""
        raw = AuthContext(access_token="abc", realm_id="1")
        prefixed = AuthContext(access_token="Bearer abc", realm_id="1")
        assert raw.bearer_value == "Bearer abc"
        assert prefixed.bearer_value == "Bearer abc"
        assert prefixed.raw_token == "abc"


class TestInMemorySessionBackend:
    """Per-id value storage with idle expiry."""

    def test_load_returns_same_dict(self):
        backend = InMemorySessionBackend()
        backend.load("a")["x"] = 1
        assert backend.load("a") == {"x": 1}
        assert backend.load("b") == {}

    def test_delete(self):
        backend = InMemorySessionBackend()
        backend.load("a")["x"] = 1
        backend.delete("a")
        assert backend.load("a") == {}

    def test_idle_sessions_expire(self):
        backend = InMemorySessionBackend(max_age=60)
        with patch("qbo_demo.session.time.monotonic", return_value=1000.0):
            backend.load("old")["x"] = 1
        with patch("qbo_demo.session.time.monotonic", return_value=1100.0):
            assert backend.purge_expired() == 1
        assert len(backend) == 0
