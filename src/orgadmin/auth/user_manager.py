"""
Authentication manager.

Combines the credential store, lockout policy, device tracker, token issuer,
reset flow and authorization gate into the login/logout/refresh flows used
by the HTTP layer.
"""

import hmac
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from loguru import logger

from . import audit
from .audit import AuditTrail
from .credentials import CredentialStore, validate_secret
from .database import AccountDatabase
from .devices import DeviceTracker, LoginRecord, LogoutRecord, apply_login, new_device_id
from .errors import (
    AccountLockedError,
    AuthenticationError,
    ConcurrentUpdateError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from .jwt_handler import JWTHandler, TokenPayload
from .lockout import active_lock, apply_failure, apply_success, unlock
from .models import DEFAULT_MAX_ALLOWED_DEVICES, Account, Clock, Principal, utcnow
from .password_reset import RESET_TOKEN_TTL, PasswordResetFlow
from .permissions import AuthorizationGate


INVALID_CREDENTIALS = "Invalid username or password"


@dataclass
class LoginResult:
    """
    Successful login.

    Attributes:
        principal: Owning principal
        account: Account after the login was recorded
        access_token: Short-lived access token
        refresh_token: Refresh token stored on the device
        device: What the device tracker recorded
    """
    principal: Principal
    account: Account
    access_token: str
    refresh_token: str
    device: LoginRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": {
                "id": self.principal.user_id,
                "name": self.principal.name,
                "email": self.principal.email,
                "role": self.principal.role,
            },
            "tokens": {
                "accessToken": self.access_token,
                "refreshToken": self.refresh_token,
            },
            "device": {
                "deviceId": self.device.device_id,
                "loginCount": self.device.login_count,
            },
            "session": {
                "isLoggedIn": self.account.is_logged_in,
                "totalDevices": self.device.total_devices,
            },
        }


@dataclass
class AuthenticatedUser:
    """Identity attached to an authenticated request."""
    payload: TokenPayload
    account_id: str
    principal: Principal

    @property
    def user_id(self) -> str:
        return self.principal.user_id


class AuthManager:
    """
    Authentication and session manager.

    Provides:
    - Login with lockout and device tracking
    - Logout, refresh and access-token authentication
    - Password change, credential registration and admin unlock
    - Session queries per principal
    """

    def __init__(
        self,
        db: AccountDatabase,
        jwt: JWTHandler,
        bcrypt_rounds: int = 10,
        max_allowed_devices: int = DEFAULT_MAX_ALLOWED_DEVICES,
        reset_ttl: timedelta = RESET_TOKEN_TTL,
        clock: Clock = utcnow,
        audit_trail: Optional[AuditTrail] = None,
    ):
        """
        Initialize manager.

        Args:
            db: Account database
            jwt: Token issuer
            bcrypt_rounds: bcrypt cost factor
            max_allowed_devices: Device cap for newly registered accounts
            reset_ttl: Reset token lifetime
            clock: Time source for locks, sessions and reset expiry
            audit_trail: Audit trail (defaults to the logging sink)
        """
        self.db = db
        self.jwt = jwt
        self.clock = clock
        self.max_allowed_devices = max_allowed_devices
        self.audit = audit_trail or AuditTrail()

        self.credentials = CredentialStore(db, rounds=bcrypt_rounds)
        self.devices = DeviceTracker(db, clock=clock)
        self.resets = PasswordResetFlow(db, self.credentials, ttl=reset_ttl, clock=clock, audit_trail=self.audit)
        self.gate = AuthorizationGate(db)

    # ========================================================================
    # Login / Logout / Refresh
    # ========================================================================

    def login(
        self,
        username: str,
        password: str,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """
        Authenticate a username/password pair and open a device session.

        An active lock rejects the attempt before the counters are touched.
        Unknown usernames and wrong passwords get the same message.

        Raises:
            ValidationError: If username or password is missing
            AccountLockedError: If the account is locked (423 temporary, 403 permanent)
            AuthenticationError: On bad credentials or an ineligible principal
        """
        if not username or not username.strip():
            raise ValidationError("Username is required")
        if not password or not password.strip():
            raise ValidationError("Password is required")

        result = self.credentials.verify(username, password)
        account = result.account
        if account is None:
            logger.warning(f"Login failed: unknown username from {ip_address}")
            raise AuthenticationError(INVALID_CREDENTIALS)

        now = self.clock()
        self._reject_if_locked(account, now)

        if not result.ok:
            try:
                self._record_failure(account, now, ip_address, user_agent)
            except ConcurrentUpdateError:
                # same response as an unknown username
                logger.warning(f"Login failure for {account.username} not counted: account busy")
            raise AuthenticationError(INVALID_CREDENTIALS)

        principal = self.db.get_principal(account.user_id)
        if principal is None or not principal.can_login or not principal.is_active:
            logger.warning(f"Login refused: {account.username} is not eligible")
            raise AuthenticationError("Your account is not eligible for login")
        if principal.is_blocked:
            logger.warning(f"Login refused: {account.username} is blocked")
            raise AuthenticationError("Your account has been blocked")

        device_id = device_id or new_device_id()

        def _login(acc: Account):
            self._reject_if_locked(acc, now)
            apply_success(acc)
            record = apply_login(acc, device_id, ip_address, user_agent, now)
            refresh_token = self.jwt.create_refresh_token(acc, device_id)
            acc.get_device(device_id).refresh_token = refresh_token
            return record, refresh_token, acc

        record, refresh_token, account = self.db.mutate_account(account.account_id, _login)
        access_token = self.jwt.create_access_token(account)

        for evicted in record.evicted:
            logger.info(f"Device {evicted} evicted from {account.username} (device limit)")
            self.audit.emit(
                audit.DEVICE_EVICTED,
                user_id=account.user_id,
                resource_id=account.account_id,
                changes={"deviceId": evicted},
                ip_address=ip_address,
                user_agent=user_agent,
            )

        self.audit.emit(
            audit.USER_LOGIN,
            user_id=account.user_id,
            resource_id=account.account_id,
            changes={"deviceId": record.device_id, "deviceCount": record.total_devices},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.success(f"User logged in: {account.username} on device {record.device_id}")

        return LoginResult(
            principal=principal,
            account=account,
            access_token=access_token,
            refresh_token=refresh_token,
            device=record,
        )

    def _reject_if_locked(self, account: Account, now) -> None:
        lock = active_lock(account, now)
        if lock is None:
            return
        if lock.permanent:
            logger.warning(f"Login rejected: {account.username} is permanently locked")
            raise AccountLockedError(permanent=True)
        remaining = account.lock_remaining_seconds(now)
        logger.warning(f"Login rejected: {account.username} is locked for {remaining}s")
        raise AccountLockedError(remaining_seconds=remaining)

    def _record_failure(self, account: Account, now, ip_address: Optional[str], user_agent: Optional[str]) -> None:
        def _fail(acc: Account):
            # another request may have locked the account since it was read
            if active_lock(acc, now) is not None:
                return None
            return apply_failure(acc, now)

        decision = self.db.mutate_account(account.account_id, _fail)
        logger.warning(f"Login failed: invalid password for {account.username}")

        self.audit.emit(
            audit.LOGIN_FAILED,
            user_id=account.user_id,
            resource_id=account.account_id,
            status="failure",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if decision is not None and decision.is_locked:
            logger.warning(f"Account {account.username} locked at level {decision.lock_level}")
            self.audit.emit(
                audit.ACCOUNT_LOCKED,
                user_id=account.user_id,
                resource_id=account.account_id,
                status="failure",
                changes={"lockLevel": decision.lock_level, "permanent": decision.permanent},
                ip_address=ip_address,
                user_agent=user_agent,
            )

    def logout(
        self,
        account_id: str,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LogoutRecord:
        """
        Close the session on one device, or on every device when none is given.

        Returns:
            LogoutRecord with the remaining active devices
        """
        record = self.devices.record_logout(account_id, device_id)
        account = self.db.get_account(account_id)
        self.audit.emit(
            audit.USER_LOGOUT,
            user_id=account.user_id if account else None,
            resource_id=account_id,
            changes={"deviceId": device_id, "loggedOut": record.logged_out},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return record

    def refresh(self, refresh_token: Optional[str]) -> str:
        """
        Exchange a refresh token for a new access token.

        The token must match the one currently stored for its device; tokens
        replaced by a later login or cleared by a logout are rejected.

        Raises:
            TokenError: If the token is missing, invalid, expired or superseded
        """
        if not refresh_token:
            raise TokenError("Refresh token is required")

        payload = self.jwt.verify_refresh_token(refresh_token)

        account = self.db.get_account(payload.account_id)
        device = account.get_device(payload.device_id) if account else None
        stored = device.refresh_token if device else None
        if not stored or not hmac.compare_digest(stored, refresh_token):
            logger.warning(f"Refresh rejected for account {payload.account_id}: token does not match device")
            raise TokenError("Invalid refresh token")

        principal = self.db.get_principal(account.user_id)
        if principal is None or not principal.is_eligible:
            raise AuthenticationError("Your account is not eligible for login")

        logger.debug(f"Access token refreshed for {account.username}")
        return self.jwt.create_access_token(account)

    def authenticate(self, access_token: Optional[str]) -> AuthenticatedUser:
        """
        Resolve an access token to the principal it was issued for.

        Raises:
            TokenError: If the token is missing or invalid, or its account is gone
            AuthenticationError: If the principal can no longer log in
        """
        if not access_token:
            raise TokenError("Access token is required")

        payload = self.jwt.verify_access_token(access_token)
        principal = self.db.get_principal(payload.user_id)
        if principal is None:
            raise TokenError("Invalid access token")
        if not principal.is_eligible:
            raise AuthenticationError("Your account is not eligible for login")

        return AuthenticatedUser(payload=payload, account_id=payload.account_id, principal=principal)

    # ========================================================================
    # Credentials
    # ========================================================================

    def register_credentials(
        self,
        user_id: str,
        username: str,
        password: str,
        max_allowed_devices: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Account:
        """
        Provision login credentials for an existing principal.

        Raises:
            ValidationError: On missing fields or a weak password
            NotFoundError: If the principal does not exist
            ConflictError: If the principal already has credentials or the username is taken
        """
        if not user_id or not username or not username.strip() or not password:
            raise ValidationError("UserId, username, and password are required")
        validate_secret(password)
        if max_allowed_devices is not None and max_allowed_devices < 1:
            raise ValidationError("maxAllowedDevices must be at least 1")

        if self.db.get_principal(user_id) is None:
            raise NotFoundError("User not found")

        account = self.db.create_account(Account(
            account_id=str(uuid.uuid4()),
            user_id=user_id,
            username=username.strip().lower(),
            password_hash=self.credentials.hash_secret(password),
            max_allowed_devices=max_allowed_devices or self.max_allowed_devices,
        ))
        self.db.set_can_login(user_id, True)

        self.audit.emit(
            audit.CREDENTIALS_REGISTERED,
            user_id=actor_id,
            resource_id=account.account_id,
            changes={"username": account.username},
            metadata={"targetUserId": user_id},
        )
        return account

    def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        confirm_password: str,
    ) -> Account:
        """
        Change a password after re-checking the old one.

        Raises:
            ValidationError: On missing fields, mismatch, weak or unchanged password
            NotFoundError: If the principal has no credentials
            AuthenticationError: If the old password is wrong
        """
        if not old_password or not new_password or not confirm_password:
            raise ValidationError("All password fields are required")
        if new_password != confirm_password:
            raise ValidationError("New passwords do not match")
        validate_secret(new_password, label="New password")
        if new_password == old_password:
            raise ValidationError("New password must be different from old password")

        account = self.account_for_user(user_id)
        if not self.credentials.check_secret(old_password, account.password_hash):
            logger.warning(f"Password change refused for {account.username}: old password is incorrect")
            raise AuthenticationError("Old password is incorrect")

        account = self.credentials.set_secret(account.account_id, new_password)
        self.audit.emit(audit.PASSWORD_CHANGED, user_id=user_id, resource_id=account.account_id)
        return account

    def unlock_account(self, user_id: str, actor_id: Optional[str] = None) -> Account:
        """Clear every lock field, including a permanent lock."""
        account = self.account_for_user(user_id)

        def _unlock(acc: Account) -> Account:
            unlock(acc)
            return acc

        account = self.db.mutate_account(account.account_id, _unlock)
        logger.info(f"Account {account.username} unlocked by {actor_id}")
        self.audit.emit(
            audit.ACCOUNT_UNLOCKED,
            user_id=actor_id,
            resource_id=account.account_id,
            metadata={"targetUserId": user_id},
        )
        return account

    # ========================================================================
    # Session queries
    # ========================================================================

    def account_for_user(self, user_id: str) -> Account:
        account = self.db.get_account_by_user(user_id)
        if account is None:
            raise NotFoundError("User login record not found")
        return account

    def get_login_attempts(self, user_id: str) -> Dict[str, Any]:
        account = self.account_for_user(user_id)
        return {
            "failedLoginAttempts": account.failed_login_attempts,
            "lockLevel": account.lock_level,
            "lockUntil": account.lock_until.isoformat() if account.lock_until else None,
            "isPermanentlyLocked": account.is_permanently_locked,
            "remainingSeconds": account.lock_remaining_seconds(self.clock()),
        }

    def get_sessions(self, user_id: str) -> Dict[str, Any]:
        account = self.account_for_user(user_id)
        devices = self.devices.get_active_devices(account.account_id)
        return {
            "userId": user_id,
            "isLoggedIn": account.is_logged_in,
            "totalSessions": len(account.devices),
            "activeSessions": len(devices),
            "devices": devices,
        }

    def logout_all(
        self,
        user_id: str,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Close every session of a principal and clear every refresh token."""
        account = self.account_for_user(user_id)
        record = self.devices.logout_all(account.account_id)

        logger.info(f"{account.username} logged out from {len(record.logged_out)} device(s)")
        self.audit.emit(
            audit.USER_LOGOUT_ALL_DEVICES,
            user_id=actor_id or user_id,
            resource_id=account.account_id,
            changes={"loggedOutDevices": record.logged_out},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return {"loggedOutDevices": record.logged_out, "isLoggedIn": record.is_logged_in}
