"""
Credential store.

Owns password hashing and verification. Secrets are bcrypt-hashed before they
reach the database and are never logged or returned.
"""

from dataclasses import dataclass
from typing import Optional

import bcrypt
from loguru import logger

from .database import AccountDatabase
from .errors import ValidationError
from .models import Account


MIN_SECRET_LENGTH = 8
MAX_SECRET_LENGTH = 128
# bcrypt input limit
MAX_SECRET_BYTES = 72
DEFAULT_BCRYPT_ROUNDS = 10


@dataclass
class VerifyResult:
    """
    Outcome of a credential check.

    Attributes:
        ok: True only if the account exists and the secret matched
        account: The account, when the username is known (even on mismatch)
    """
    ok: bool
    account: Optional[Account] = None


def validate_secret(secret: Optional[str], label: str = "Password") -> str:
    """
    Enforce the password policy.

    Raises:
        ValidationError: If the secret is missing, shorter than 8 or longer than 128
            characters, or longer than 72 bytes once UTF-8 encoded
    """
    if not secret or not secret.strip():
        raise ValidationError(f"{label} is required")
    if len(secret) < MIN_SECRET_LENGTH:
        raise ValidationError(f"{label} must be at least {MIN_SECRET_LENGTH} characters long")
    if len(secret) > MAX_SECRET_LENGTH:
        raise ValidationError(f"{label} must be at most {MAX_SECRET_LENGTH} characters long")
    if len(secret.encode("utf-8")) > MAX_SECRET_BYTES:
        raise ValidationError(f"{label} must be at most {MAX_SECRET_BYTES} bytes long")
    return secret


class CredentialStore:
    """
    Password hashing and verification on top of AccountDatabase.

    Unknown usernames are still run through bcrypt against a dummy hash so the
    response time does not reveal whether the account exists.
    """

    def __init__(self, db: AccountDatabase, rounds: int = DEFAULT_BCRYPT_ROUNDS):
        """
        Initialize store.

        Args:
            db: Account database
            rounds: bcrypt cost factor
        """
        self.db = db
        self.rounds = rounds
        self._dummy_hash = self.hash_secret("timing-equalizer-secret")

    def hash_secret(self, secret: str) -> str:
        return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def check_secret(self, candidate: str, password_hash: str) -> bool:
        """Compare a candidate secret with a stored bcrypt hash."""
        candidate_bytes = candidate.encode("utf-8")
        if len(candidate_bytes) > MAX_SECRET_BYTES:
            # no stored secret can be this long
            return False
        try:
            return bcrypt.checkpw(candidate_bytes, password_hash.encode("utf-8"))
        except ValueError:
            logger.error("Stored password hash is malformed")
            return False

    def verify(self, username: str, candidate: str) -> VerifyResult:
        """
        Verify a username/secret pair.

        Args:
            username: Username (case-insensitive)
            candidate: Plain text secret

        Returns:
            VerifyResult; `account` is set whenever the username is known so
            the caller can count failures, but `ok` looks the same for unknown
            users and wrong secrets
        """
        account = self.db.get_account_by_username(username)
        if account is None:
            self.check_secret(candidate, self._dummy_hash)
            return VerifyResult(ok=False)

        return VerifyResult(ok=self.check_secret(candidate, account.password_hash), account=account)

    def set_secret(self, account_id: str, new_secret: str) -> Account:
        """
        Hash and persist a new secret.

        Raises:
            ValidationError: If the secret violates the password policy
            NotFoundError: If the account does not exist
        """
        validate_secret(new_secret)
        password_hash = self.hash_secret(new_secret)

        def _apply(account: Account) -> Account:
            account.password_hash = password_hash
            return account

        account = self.db.mutate_account(account_id, _apply)
        logger.info(f"Password updated for account {account.username}")
        return account
