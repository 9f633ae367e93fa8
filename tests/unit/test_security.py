"""
Unit tests for bearer token validation.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from app.core.security import SecurityManager

pytestmark = pytest.mark.unit

SECRET = "unit-test-secret"


@pytest.fixture
def manager():
    return SecurityManager(secret=SECRET, algorithm="HS256", audience="authenticated")


def token(secret=SECRET, **claims):
    payload = {
        "sub": "b6c1d1c2-8a1e-4b1f-9f55-5d5a1f0b2a10",
        "aud": "authenticated",
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class TestSecurityManager:
    """Tests for SecurityManager."""

    def test_plain_user(self, manager):
        data = manager.token_data(token(email="user@example.com"))
        assert data.role == "user"
        assert data.email == "user@example.com"
        assert not data.is_admin

    def test_role_from_app_metadata(self, manager):
        data = manager.token_data(token(role="authenticated", app_metadata={"role": "admin"}))
        assert data.role == "admin"
        assert data.is_admin

    def test_service_role_is_admin(self, manager):
        assert manager.token_data(token(role="service_role")).is_admin

    def test_wrong_secret(self, manager):
        assert manager.token_data(token(secret="other-secret")) is None

    def test_expired(self, manager):
        expired = token(exp=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert manager.token_data(expired) is None

    def test_wrong_audience(self, manager):
        assert manager.token_data(token(aud="anon")) is None

    def test_missing_subject(self, manager):
        assert manager.token_data(token(sub="")) is None
