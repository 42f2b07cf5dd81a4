"""
JWT token generation and validation.

Access tokens are short-lived and carry the login identity (`id`, `username`).
Refresh tokens are long-lived, carry `id` plus the device they were issued
to, and are signed with their own secret. Verification never mutates state.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from loguru import logger

from .errors import TokenError
from .models import Account


ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 15
REFRESH_TOKEN_EXPIRE_DAYS = 7

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPayload:
    """
    Decoded JWT payload.

    Attributes:
        account_id: Account the token was issued to (sub claim)
        user_id: Principal id (id claim)
        username: Username (access tokens only)
        device_id: Device the token is bound to (refresh tokens only)
        exp: Expiration timestamp
        iat: Issued at timestamp
        jti: Unique token id
        token_type: "access" or "refresh"
    """
    account_id: str
    user_id: str
    username: Optional[str]
    device_id: Optional[str]
    exp: datetime
    iat: datetime
    jti: str
    token_type: str


class JWTHandler:
    """
    JWT token handler.

    Creates and validates access and refresh tokens.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = ALGORITHM,
        access_expiry: timedelta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_expiry: timedelta = timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
    ):
        """
        Initialize handler.

        Args:
            access_secret: Secret key for signing access tokens
            refresh_secret: Secret key for signing refresh tokens
            algorithm: JWT algorithm (default: HS256)
            access_expiry: Access token lifetime
            refresh_expiry: Refresh token lifetime
        """
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_expiry = access_expiry
        self.refresh_expiry = refresh_expiry

    def create_access_token(self, account: Account) -> str:
        """
        Create JWT access token.

        Args:
            account: Account logging in

        Returns:
            JWT token string
        """
        now = datetime.now(timezone.utc)

        payload = {
            "iat": now,
            "exp": now + self.access_expiry,
            "sub": account.account_id,
            "id": account.user_id,
            "username": account.username,
            "jti": secrets.token_urlsafe(16),
            "type": ACCESS,
        }

        token = jwt.encode(payload, self.access_secret, algorithm=self.algorithm)
        logger.debug(f"Access token created for {account.username}")

        return token

    def create_refresh_token(self, account: Account, device_id: str) -> str:
        """
        Create refresh token (long-lived) bound to one device.

        Args:
            account: Account logging in
            device_id: Device session that will store the token

        Returns:
            JWT refresh token string
        """
        now = datetime.now(timezone.utc)

        payload = {
            "iat": now,
            "exp": now + self.refresh_expiry,
            "sub": account.account_id,
            "id": account.user_id,
            "did": device_id,
            "jti": secrets.token_urlsafe(16),
            "type": REFRESH,
        }

        return jwt.encode(payload, self.refresh_secret, algorithm=self.algorithm)

    def verify_access_token(self, token: str) -> TokenPayload:
        """
        Verify and decode an access token.

        Raises:
            TokenError: If the token is expired, malformed or not an access token
        """
        return self._verify(token, self.access_secret, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenPayload:
        """
        Verify signature and expiry of a refresh token.

        This does not check that the token is still the one stored for its
        device; the caller compares against the stored value.

        Raises:
            TokenError: If the token is expired, malformed or not a refresh token
        """
        return self._verify(token, self.refresh_secret, REFRESH)

    def _verify(self, token: str, secret: str, expected_type: str) -> TokenPayload:
        if not token:
            raise TokenError(f"{expected_type.capitalize()} token is missing")

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat", "sub", "jti"]},
            )
        except jwt.ExpiredSignatureError:
            logger.warning(f"{expected_type.capitalize()} token has expired")
            raise TokenError(f"{expected_type.capitalize()} token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid {expected_type} token: {e}")
            raise TokenError(f"Invalid {expected_type} token")

        if payload.get("type") != expected_type:
            logger.warning(f"Token type {payload.get('type')!r} presented as {expected_type} token")
            raise TokenError(f"Invalid {expected_type} token")

        if expected_type == REFRESH and not payload.get("did"):
            raise TokenError("Invalid refresh token")

        return TokenPayload(
            account_id=payload["sub"],
            user_id=payload.get("id", ""),
            username=payload.get("username"),
            device_id=payload.get("did"),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            jti=payload["jti"],
            token_type=payload["type"],
        )
