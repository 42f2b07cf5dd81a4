"""
Password reset flow.

Per token: issued -> (verified)* -> consumed, or issued -> expired.

Only the SHA-256 hash of a reset token is stored; the plaintext is handed to
the caller once, at issuance. Issuing a token invalidates every earlier
unused token of the account in the same transaction, and consuming one
invalidates the rest, so at most one token per account is ever usable.
"""

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger

from . import audit
from .audit import AuditTrail
from .credentials import CredentialStore, validate_secret
from .database import AccountDatabase
from .errors import NotFoundError, ValidationError
from .lockout import unlock
from .models import Account, Clock, PasswordResetToken, Principal, ResetReason, utcnow


RESET_TOKEN_BYTES = 32
RESET_TOKEN_TTL = timedelta(hours=1)
TEMP_PASSWORD_LENGTH = 12

GENERIC_RESET_MESSAGE = "If the username exists, a password reset link will be sent shortly"
INVALID_TOKEN_MESSAGE = "Invalid or expired reset token"


def generate_token() -> str:
    """Random 64-character hex reset token."""
    return secrets.token_hex(RESET_TOKEN_BYTES)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_temp_password() -> str:
    return secrets.token_hex(TEMP_PASSWORD_LENGTH // 2)


def _describe_ttl(ttl: timedelta) -> str:
    minutes = int(ttl.total_seconds() // 60)
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


@dataclass
class IssuedReset:
    """
    A freshly issued reset token.

    Attributes:
        reset_token: Plaintext token, returned once and never stored
        expires_at: Expiry timestamp
        expires_in: Human-readable lifetime ("1 hour")
        invalidated: Earlier tokens invalidated by this issuance
    """
    reset_token: str
    expires_at: datetime
    expires_in: str
    invalidated: int = 0


@dataclass
class VerifiedReset:
    record: PasswordResetToken
    account: Account
    principal: Principal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": True,
            "username": self.account.username,
            "expiresAt": self.record.expires_at.isoformat(),
        }


@dataclass
class AdminReset:
    username: str
    temp_password: str


class PasswordResetFlow:
    """
    Issues, verifies and consumes one-time reset tokens.

    Also provides the admin-forced reset, which skips tokens entirely.
    """

    def __init__(
        self,
        db: AccountDatabase,
        credentials: CredentialStore,
        ttl: timedelta = RESET_TOKEN_TTL,
        clock: Clock = utcnow,
        audit_trail: Optional[AuditTrail] = None,
    ):
        """
        Initialize flow.

        Args:
            db: Account database
            credentials: Credential store used to set new secrets
            ttl: Reset token lifetime
            clock: Time source for expiry checks
            audit_trail: Audit trail (defaults to the logging sink)
        """
        self.db = db
        self.credentials = credentials
        self.ttl = ttl
        self.clock = clock
        self.audit = audit_trail or AuditTrail()

    def request_reset(
        self,
        username: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[IssuedReset]:
        """
        Issue a reset token for `username`.

        Returns:
            IssuedReset, or None when the username is unknown or its owner
            cannot log in. Callers must answer both cases with the same
            generic message.

        Raises:
            ValidationError: If username is empty
        """
        if not username or not username.strip():
            raise ValidationError("Username is required")

        now = self.clock()
        self.purge_expired(now)

        account = self.db.get_account_by_username(username)
        if account is None:
            logger.warning(f"Password reset requested for unknown username from {ip_address}")
            return None

        principal = self.db.get_principal(account.user_id)
        if principal is None or not principal.can_login:
            logger.warning(f"Password reset requested for {account.user_id}, who cannot log in")
            return None

        token = generate_token()
        record = PasswordResetToken(
            reset_id=str(uuid.uuid4()),
            user_id=account.user_id,
            account_id=account.account_id,
            token_hash=hash_token(token),
            expires_at=now + self.ttl,
            reason=ResetReason.USER_REQUEST,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        invalidated = self.db.issue_reset_token(record)

        logger.info(f"Password reset requested for {account.username} ({invalidated} earlier token(s) invalidated)")
        self.audit.emit(
            audit.PASSWORD_RESET_REQUESTED,
            user_id=account.user_id,
            resource_id=account.account_id,
            changes={"resetId": record.reset_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )

        return IssuedReset(
            reset_token=token,
            expires_at=record.expires_at,
            expires_in=_describe_ttl(self.ttl),
            invalidated=invalidated,
        )

    def verify(self, token: str) -> VerifiedReset:
        """
        Check a reset token without consuming it.

        Raises:
            ValidationError: If the token is empty or its owner can no longer log in
            NotFoundError: If the token is unknown, used or expired
        """
        if not token or not token.strip():
            raise ValidationError("Reset token is required")

        record = self.db.get_reset_by_hash(hash_token(token.strip()))
        if record is None or record.is_used:
            raise NotFoundError(INVALID_TOKEN_MESSAGE)

        if not record.is_valid(self.clock()):
            raise NotFoundError("Reset token has expired. Request a new one.")

        account = self.db.get_account(record.account_id)
        principal = self.db.get_principal(record.user_id)
        if account is None or principal is None or not principal.can_login:
            raise ValidationError("User account is no longer eligible for password reset")

        return VerifiedReset(record=record, account=account, principal=principal)

    def consume(
        self,
        token: str,
        new_password: str,
        confirm_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        """
        Set a new password with a reset token. A token can be consumed once.

        Input is validated before the token is touched, so a rejected
        password leaves the token usable.

        Returns:
            The updated account

        Raises:
            ValidationError: On missing input, mismatch or weak password
            NotFoundError: If the token is unknown, used or expired
        """
        if not token or not token.strip():
            raise ValidationError("Reset token is required")
        if not new_password or not new_password.strip():
            raise ValidationError("New password is required")
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match")
        validate_secret(new_password)

        self.verify(token)
        password_hash = self.credentials.hash_secret(new_password)

        record = self.db.consume_reset_token(hash_token(token.strip()), password_hash, self.clock())
        if record is None:
            # lost the claim to a concurrent consumer
            raise NotFoundError(INVALID_TOKEN_MESSAGE)

        account = self.db.get_account(record.account_id)
        logger.info(f"Password reset completed for {account.username}")
        self.audit.emit(
            audit.PASSWORD_RESET_COMPLETED,
            user_id=account.user_id,
            resource_id=account.account_id,
            changes={"resetId": record.reset_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return account

    def admin_reset(
        self,
        user_id: str,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AdminReset:
        """
        Replace a user's password with a random temporary one.

        Clears every lock field and invalidates outstanding reset tokens.

        Returns:
            AdminReset carrying the temporary password (shown once)

        Raises:
            NotFoundError: If the principal does not exist
            ValidationError: If the principal has no login credentials
        """
        if self.db.get_principal(user_id) is None:
            raise NotFoundError("User not found")

        account = self.db.get_account_by_user(user_id)
        if account is None:
            raise ValidationError("User has no login credentials")

        temp_password = generate_temp_password()
        password_hash = self.credentials.hash_secret(temp_password)

        def _reset(acc: Account) -> Account:
            acc.password_hash = password_hash
            unlock(acc)
            return acc

        account = self.db.mutate_account(account.account_id, _reset)
        self.db.invalidate_reset_tokens(account.account_id, self.clock())

        logger.info(f"Admin {actor_id} reset password for {account.username}")
        self.audit.emit(
            audit.ADMIN_RESET_PASSWORD,
            user_id=actor_id,
            resource_id=account.account_id,
            changes={"username": account.username},
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"targetUserId": user_id},
        )
        return AdminReset(username=account.username, temp_password=temp_password)

    def reset_status(self, username: str) -> Dict[str, Any]:
        """Whether an unused, unexpired token exists for `username`."""
        if not username or not username.strip():
            raise ValidationError("Username is required")

        account = self.db.get_account_by_username(username)
        if account is None:
            return {"hasPendingReset": False, "expiresAt": None}

        pending = self.db.get_pending_reset(account.account_id, self.clock())
        return {
            "hasPendingReset": pending is not None,
            "expiresAt": pending.expires_at.isoformat() if pending else None,
        }

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return self.db.purge_expired_reset_tokens(now or self.clock())
