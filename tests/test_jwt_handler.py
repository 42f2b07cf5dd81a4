"""
Tests for access and refresh token handling.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from orgadmin.auth.errors import TokenError
from orgadmin.auth.jwt_handler import JWTHandler
from orgadmin.auth.models import Account


ACCOUNT = Account(account_id="acc-1", user_id="u-1", username="alice", password_hash="x")


@pytest.fixture
def handler():
    return JWTHandler("access-secret", "refresh-secret")


class TestAccessToken:
    """Test access tokens."""

    def test_roundtrip_claims(self, handler):
        payload = handler.verify_access_token(handler.create_access_token(ACCOUNT))

        assert payload.account_id == "acc-1"
        assert payload.user_id == "u-1"
        assert payload.username == "alice"
        assert payload.token_type == "access"
        assert payload.exp - payload.iat == timedelta(minutes=15)

    def test_expired(self, handler):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = jwt.encode(
            {"iat": past, "exp": past + timedelta(minutes=1), "sub": "acc-1", "id": "u-1",
             "jti": "j", "type": "access"},
            "access-secret",
            algorithm="HS256",
        )
        with pytest.raises(TokenError, match="expired"):
            handler.verify_access_token(token)

    def test_wrong_secret(self, handler):
        other = JWTHandler("other-secret", "refresh-secret")
        with pytest.raises(TokenError, match="Invalid access token"):
            handler.verify_access_token(other.create_access_token(ACCOUNT))

    def test_garbage(self, handler):
        with pytest.raises(TokenError):
            handler.verify_access_token("not.a.jwt")

    def test_missing(self, handler):
        with pytest.raises(TokenError, match="missing"):
            handler.verify_access_token("")


class TestRefreshToken:
    """Test refresh tokens."""

    def test_carries_device(self, handler):
        payload = handler.verify_refresh_token(handler.create_refresh_token(ACCOUNT, "dev-1"))

        assert payload.device_id == "dev-1"
        assert payload.user_id == "u-1"
        assert payload.username is None
        assert payload.exp - payload.iat == timedelta(days=7)

    def test_tokens_are_unique(self, handler):
        """Two tokens issued in the same second still differ."""
        assert handler.create_refresh_token(ACCOUNT, "dev-1") != handler.create_refresh_token(ACCOUNT, "dev-1")

    def test_access_token_is_not_a_refresh_token(self):
        shared = JWTHandler("same-secret", "same-secret")
        with pytest.raises(TokenError, match="Invalid refresh token"):
            shared.verify_refresh_token(shared.create_access_token(ACCOUNT))

    def test_refresh_token_is_not_an_access_token(self, handler):
        with pytest.raises(TokenError):
            handler.verify_access_token(handler.create_refresh_token(ACCOUNT, "dev-1"))
