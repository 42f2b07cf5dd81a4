"""
Authentication core for the organization admin backend.

Provides password login with escalating lockout, per-device sessions with
refresh tokens, one-time password reset tokens and role-based authorization.
"""

from .models import Account, DeviceSession, LoginEvent, PasswordResetToken, Principal, Role, RoleScope
from .errors import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    ConcurrentUpdateError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ServiceError,
    TokenError,
    ValidationError,
)
from .database import AccountDatabase
from .credentials import CredentialStore
from .devices import DeviceTracker
from .jwt_handler import JWTHandler, TokenPayload
from .password_reset import PasswordResetFlow
from .permissions import (
    SYSTEM_ROLES,
    AuthorizationGate,
    MatchMode,
    Permission,
    PrincipalView,
    scope_filter,
    seed_roles,
)
from .audit import AuditEvent, AuditTrail, LoggingAuditSink
from .user_manager import AuthenticatedUser, AuthManager, LoginResult

__all__ = [
    # Models
    "Account",
    "DeviceSession",
    "LoginEvent",
    "PasswordResetToken",
    "Principal",
    "Role",
    "RoleScope",
    # Errors
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "AccountLockedError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ConcurrentUpdateError",
    "ConfigurationError",
    # Components
    "AccountDatabase",
    "CredentialStore",
    "DeviceTracker",
    "JWTHandler",
    "TokenPayload",
    "PasswordResetFlow",
    "AuthManager",
    "AuthenticatedUser",
    "LoginResult",
    # RBAC
    "Permission",
    "MatchMode",
    "AuthorizationGate",
    "PrincipalView",
    "SYSTEM_ROLES",
    "scope_filter",
    "seed_roles",
    # Audit
    "AuditEvent",
    "AuditTrail",
    "LoggingAuditSink",
]
