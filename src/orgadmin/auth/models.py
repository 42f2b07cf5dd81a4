"""
Authentication data models.

Data classes for principals, roles, login accounts, device sessions and
password reset tokens.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional


DEFAULT_MAX_ALLOWED_DEVICES = 2

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoleScope(str, Enum):
    """Visibility scope attached to a role."""
    SYSTEM = "SYSTEM"
    ORGANIZATION = "ORGANIZATION"
    DEPARTMENT = "DEPARTMENT"
    BRANCH = "BRANCH"


class ResetReason(str, Enum):
    """Why a password reset record was created."""
    USER_REQUEST = "user_request"
    ADMIN_FORCED_RESET = "admin_forced_reset"


@dataclass
class Principal:
    """
    A user of the admin backend (owned by the users CRUD layer).

    Attributes:
        user_id: Unique principal identifier
        name: Display name
        organization_id: Owning organization
        email: Email address (optional)
        role: Legacy string role ("enterprise_admin", "super_admin", "admin", "user")
        role_code: Code of the assigned Role, None to fall back to `role`
        department_id: Department for scope filtering
        branch_ids: Branches for scope filtering
        can_login: Whether login credentials are enabled
        is_active: Soft-disable flag
        is_blocked: Administrative block flag
        created_at: Creation timestamp
    """
    user_id: str
    name: str
    organization_id: str
    email: Optional[str] = None
    role: str = "user"
    role_code: Optional[str] = None
    department_id: Optional[str] = None
    branch_ids: List[str] = field(default_factory=list)
    can_login: bool = False
    is_active: bool = True
    is_blocked: bool = False
    created_at: Optional[datetime] = None

    @property
    def is_eligible(self) -> bool:
        return self.can_login and self.is_active and not self.is_blocked


@dataclass
class Role:
    """
    Named, leveled capability set.

    Attributes:
        code: Unique role code (e.g. "ROLE_ADMIN")
        name: Human-readable name
        level: Hierarchy level, 1 (lowest) to 5 (highest)
        permissions: Permission codes granted by this role
        scope: Visibility scope tag
        description: Purpose of the role
        is_system_role: System roles cannot be modified
        is_active: Inactive roles resolve to "no role"
        organization_id: Owning organization, None for system-wide roles
    """
    code: str
    name: str
    level: int
    permissions: FrozenSet[str] = frozenset()
    scope: RoleScope = RoleScope.ORGANIZATION
    description: str = ""
    is_system_role: bool = False
    is_active: bool = True
    organization_id: Optional[str] = None


@dataclass
class LoginEvent:
    """One login/logout pair on a device. logout_at is None while active."""
    login_at: datetime
    logout_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.logout_at is None


@dataclass
class DeviceSession:
    """
    A tracked client device under an account.

    Attributes:
        device_id: Client-supplied or generated identifier
        ip_address: Last seen IP address
        user_agent: Last seen user agent
        login_count: Number of logins from this device
        refresh_token: Current refresh token, None once logged out
        history: Login/logout events, oldest first
        created_at: When the device was first seen
    """
    device_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_count: int = 0
    refresh_token: Optional[str] = None
    history: List[LoginEvent] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def current_event(self) -> Optional[LoginEvent]:
        """Return the open event, if the most recent event is still open."""
        if self.history and self.history[-1].is_open:
            return self.history[-1]
        return None

    @property
    def is_active(self) -> bool:
        return self.current_event() is not None

    @property
    def last_login_at(self) -> Optional[datetime]:
        return self.history[-1].login_at if self.history else None


@dataclass
class Account:
    """
    Login credentials and lock state for one principal.

    Devices are kept in insertion order (oldest first) with an index from
    device id to position for direct lookup.

    Attributes:
        account_id: Unique account identifier
        user_id: Owning principal
        username: Unique lowercase username
        password_hash: Bcrypt hash, never returned to clients
        failed_login_attempts: Consecutive failed verifications
        lock_level: 0 (none), 1-3 (temporary), 4 (permanent)
        lock_until: End of the current temporary lock
        is_permanently_locked: Set at lock level 4
        is_logged_in: True iff some device has an open event
        last_login: Last successful login
        max_allowed_devices: Hard cap on tracked devices
        version: Optimistic-concurrency version
        created_at: Creation timestamp
    """
    account_id: str
    user_id: str
    username: str
    password_hash: str
    failed_login_attempts: int = 0
    lock_level: int = 0
    lock_until: Optional[datetime] = None
    is_permanently_locked: bool = False
    is_logged_in: bool = False
    last_login: Optional[datetime] = None
    max_allowed_devices: int = DEFAULT_MAX_ALLOWED_DEVICES
    version: int = 0
    created_at: Optional[datetime] = None
    devices: List[DeviceSession] = field(default_factory=list)
    _index: Dict[str, int] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        self._reindex()

    def _reindex(self) -> None:
        self._index = {d.device_id: i for i, d in enumerate(self.devices)}

    def get_device(self, device_id: str) -> Optional[DeviceSession]:
        position = self._index.get(device_id)
        return self.devices[position] if position is not None else None

    def add_device(self, device: DeviceSession) -> None:
        if device.device_id in self._index:
            raise ValueError(f"Device already tracked: {device.device_id}")
        self._index[device.device_id] = len(self.devices)
        self.devices.append(device)

    def evict_oldest(self) -> Optional[DeviceSession]:
        """Drop the device at position 0 (oldest by insertion)."""
        if not self.devices:
            return None
        evicted = self.devices.pop(0)
        self._reindex()
        return evicted

    def active_devices(self) -> List[DeviceSession]:
        return [d for d in self.devices if d.is_active]

    def refresh_logged_in(self) -> bool:
        """Recompute is_logged_in from the device events."""
        self.is_logged_in = any(d.is_active for d in self.devices)
        return self.is_logged_in

    def lock_remaining_seconds(self, now: datetime) -> int:
        if self.lock_until is None or self.lock_until <= now:
            return 0
        remaining = (self.lock_until - now).total_seconds()
        return max(1, math.ceil(remaining))


@dataclass
class PasswordResetToken:
    """
    Password reset record. Only the SHA-256 hash of the token is stored.

    Attributes:
        reset_id: Unique record identifier
        user_id: Principal the reset applies to
        account_id: Account the reset applies to
        token_hash: Hex SHA-256 of the plaintext token
        expires_at: Expiry timestamp
        is_used: Consumed or invalidated
        used_at: When it was consumed or invalidated
        reason: User request or admin forced reset
        ip_address: Requesting IP address
        user_agent: Requesting user agent
        created_at: Creation timestamp
    """
    reset_id: str
    user_id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    reason: ResetReason = ResetReason.USER_REQUEST
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        return not self.is_used and now < self.expires_at
