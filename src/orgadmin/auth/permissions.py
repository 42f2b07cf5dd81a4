"""
Permission and Role-Based Access Control (RBAC).

This module provides:
- Permission codes and the static system role catalog
- Role resolution for principals (assigned role, else legacy string role)
- The authorization gate: ANY/ALL permission checks, role level and role code checks
- Scope filters that callers apply to restrict visible data

The gate only answers yes/no. Data filtering by organization, department or
branch is left to callers through scope_filter().
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from loguru import logger

from .database import AccountDatabase
from .errors import AuthorizationError
from .models import Principal, Role, RoleScope


class Permission(str, Enum):
    """Every permission code known to the backend."""
    # User management
    USER_CREATE = "USER_CREATE"
    USER_READ = "USER_READ"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_DISABLE = "USER_DISABLE"
    USER_PERMISSIONS = "USER_PERMISSIONS"

    # Asset management
    ASSET_CREATE = "ASSET_CREATE"
    ASSET_READ = "ASSET_READ"
    ASSET_UPDATE = "ASSET_UPDATE"
    ASSET_DELETE = "ASSET_DELETE"
    ASSET_ASSIGN = "ASSET_ASSIGN"
    ASSET_EXPORT = "ASSET_EXPORT"

    # Reports
    REPORT_VIEW = "REPORT_VIEW"
    REPORT_GENERATE = "REPORT_GENERATE"
    REPORT_EXPORT = "REPORT_EXPORT"

    # Organization
    ORG_MANAGE = "ORG_MANAGE"
    ORG_READ = "ORG_READ"

    # Departments
    DEPT_CREATE = "DEPT_CREATE"
    DEPT_MANAGE = "DEPT_MANAGE"

    # Audit & settings
    AUDIT_VIEW = "AUDIT_VIEW"
    SETTINGS_MANAGE = "SETTINGS_MANAGE"


class MatchMode(str, Enum):
    """How a list of required permission codes is matched."""
    ANY = "ANY"     # at least one code
    ALL = "ALL"     # every code


P = Permission

SYSTEM_ROLES: List[Role] = [
    Role(
        code="ROLE_ENTERPRISE_ADMIN",
        name="Enterprise Admin",
        level=5,
        scope=RoleScope.SYSTEM,
        is_system_role=True,
        description="Full system access across all organizations.",
        permissions=frozenset(p.value for p in Permission),
    ),
    Role(
        code="ROLE_SUPER_ADMIN",
        name="Super Admin",
        level=4,
        scope=RoleScope.ORGANIZATION,
        is_system_role=True,
        description="Manages users, assets and reports within the organization. No settings.",
        permissions=frozenset(p.value for p in (
            P.USER_CREATE, P.USER_READ, P.USER_UPDATE, P.USER_DISABLE, P.USER_PERMISSIONS,
            P.ASSET_CREATE, P.ASSET_READ, P.ASSET_UPDATE, P.ASSET_ASSIGN, P.ASSET_EXPORT,
            P.REPORT_VIEW, P.REPORT_GENERATE, P.REPORT_EXPORT,
            P.ORG_READ,
            P.DEPT_CREATE, P.DEPT_MANAGE,
            P.AUDIT_VIEW,
        )),
    ),
    Role(
        code="ROLE_ADMIN",
        name="Admin",
        level=3,
        scope=RoleScope.DEPARTMENT,
        is_system_role=True,
        description="Manages users and assets within a department.",
        permissions=frozenset(p.value for p in (
            P.USER_CREATE, P.USER_READ, P.USER_UPDATE, P.USER_DISABLE,
            P.ASSET_CREATE, P.ASSET_READ, P.ASSET_UPDATE, P.ASSET_ASSIGN,
            P.REPORT_VIEW, P.REPORT_GENERATE,
            P.ORG_READ,
            P.DEPT_MANAGE,
            P.AUDIT_VIEW,
        )),
    ),
    Role(
        code="ROLE_BRANCH_ADMIN",
        name="Branch Admin",
        level=2,
        scope=RoleScope.BRANCH,
        is_system_role=True,
        description="Views and assigns assets within a branch.",
        permissions=frozenset(p.value for p in (
            P.USER_READ, P.ASSET_READ, P.ASSET_ASSIGN, P.REPORT_VIEW, P.ORG_READ,
        )),
    ),
    Role(
        code="ROLE_USER",
        name="User",
        level=1,
        scope=RoleScope.BRANCH,
        is_system_role=True,
        description="Views assets assigned to them.",
        permissions=frozenset(p.value for p in (P.ASSET_READ, P.REPORT_VIEW)),
    ),
]

# Legacy string roles on principals without a role assignment
LEGACY_ROLE_CODES: Dict[str, str] = {
    "enterprise_admin": "ROLE_ENTERPRISE_ADMIN",
    "super_admin": "ROLE_SUPER_ADMIN",
    "admin": "ROLE_ADMIN",
    "user": "ROLE_USER",
}


@dataclass
class PrincipalView:
    """A principal joined with its resolved role (None when unresolvable)."""
    principal: Principal
    role: Optional[Role] = None

    @property
    def permissions(self) -> frozenset:
        return self.role.permissions if self.role else frozenset()


@dataclass
class AuthorizationDecision:
    """
    Outcome of a permission check.

    Attributes:
        allowed: Whether the action is permitted
        reason: None when allowed, else "no_role" or "insufficient_permission"
        missing: Required codes the role lacks
    """
    allowed: bool
    reason: Optional[str] = None
    missing: List[str] = field(default_factory=list)


PermissionCode = Union[Permission, str]


def _code(value: PermissionCode) -> str:
    return value.value if isinstance(value, Enum) else str(value)


class AuthorizationGate:
    """
    Resolves a principal's role and answers permission questions.

    Read-only: the gate never mutates roles or principals.
    """

    def __init__(self, db: AccountDatabase):
        self.db = db

    def resolve(self, principal: Principal) -> PrincipalView:
        """
        Join a principal with its role.

        The assigned role_code wins; without one the legacy string role is
        mapped onto the catalog. Missing or inactive roles resolve to None.
        """
        code = principal.role_code or LEGACY_ROLE_CODES.get((principal.role or "").lower())
        role = self.db.get_role(code) if code else None
        if role is not None and not role.is_active:
            logger.debug(f"Role {role.code} of {principal.user_id} is inactive")
            role = None
        return PrincipalView(principal=principal, role=role)

    def _view(self, subject: Union[Principal, PrincipalView]) -> PrincipalView:
        return subject if isinstance(subject, PrincipalView) else self.resolve(subject)

    def authorize(
        self,
        subject: Union[Principal, PrincipalView],
        required: Iterable[PermissionCode],
        mode: MatchMode = MatchMode.ANY,
    ) -> AuthorizationDecision:
        """
        Check whether a principal's role grants the required codes.

        Args:
            subject: Principal or already-resolved view
            required: Permission codes
            mode: ANY (intersection non-empty) or ALL (superset)

        Returns:
            AuthorizationDecision
        """
        view = self._view(subject)
        if view.role is None:
            return AuthorizationDecision(allowed=False, reason=AuthorizationError.NO_ROLE)

        codes = [_code(c) for c in required]
        if not codes:
            return AuthorizationDecision(allowed=True)

        granted = view.role.permissions
        missing = [c for c in codes if c not in granted]

        if mode == MatchMode.ALL:
            allowed = not missing
        else:
            allowed = len(missing) < len(codes)

        if allowed:
            return AuthorizationDecision(allowed=True)
        return AuthorizationDecision(
            allowed=False,
            reason=AuthorizationError.INSUFFICIENT_PERMISSION,
            missing=missing,
        )

    def require(
        self,
        subject: Union[Principal, PrincipalView],
        required: Iterable[PermissionCode],
        mode: MatchMode = MatchMode.ANY,
    ) -> PrincipalView:
        """
        Require permissions, raising AuthorizationError if not granted.

        Returns:
            The resolved view, for callers that go on to filter by scope
        """
        view = self._view(subject)
        codes = [_code(c) for c in required]
        decision = self.authorize(view, codes, mode)
        if decision.allowed:
            return view

        user_id = view.principal.user_id
        if decision.reason == AuthorizationError.NO_ROLE:
            logger.warning(f"User {user_id} denied: no role assigned")
            raise AuthorizationError("No role assigned to user", reason=AuthorizationError.NO_ROLE)

        logger.warning(f"User {user_id} denied: requires {mode.value} of {', '.join(codes)}")
        if mode == MatchMode.ALL:
            message = "Insufficient permissions for this action"
        else:
            message = f"You don't have permission to perform this action. Required: {', '.join(codes)}"
        raise AuthorizationError(message, detail={"required": codes, "mode": mode.value})

    def role_level_at_least(self, subject: Union[Principal, PrincipalView], min_level: int) -> bool:
        view = self._view(subject)
        return view.role is not None and view.role.level >= min_level

    def require_level(self, subject: Union[Principal, PrincipalView], min_level: int) -> PrincipalView:
        view = self._view(subject)
        if view.role is None:
            raise AuthorizationError("No role assigned to user", reason=AuthorizationError.NO_ROLE)
        if view.role.level < min_level:
            raise AuthorizationError(
                f"This action requires role level {min_level} or higher. Your level: {view.role.level}"
            )
        return view

    def has_role(self, subject: Union[Principal, PrincipalView], *role_codes: str) -> bool:
        view = self._view(subject)
        return view.role is not None and view.role.code in role_codes


def seed_roles(db: AccountDatabase, roles: Iterable[Role] = SYSTEM_ROLES) -> int:
    """
    Insert catalog roles that are not in the database yet.

    Returns:
        Number of roles inserted
    """
    inserted = sum(1 for role in roles if db.insert_role_if_missing(role))
    if inserted:
        logger.info(f"Seeded {inserted} role(s)")
    return inserted


# ============================================================================
# Scope filters
# ============================================================================

ScopeFilter = Callable[[Principal], Dict[str, Any]]


def _system_scope(principal: Principal) -> Dict[str, Any]:
    return {}


def _organization_scope(principal: Principal) -> Dict[str, Any]:
    return {"organization_id": principal.organization_id}


def _department_scope(principal: Principal) -> Dict[str, Any]:
    return {"organization_id": principal.organization_id, "department_id": principal.department_id}


def _branch_scope(principal: Principal) -> Dict[str, Any]:
    return {"organization_id": principal.organization_id, "branch_ids": list(principal.branch_ids)}


SCOPE_FILTERS: Dict[RoleScope, ScopeFilter] = {
    RoleScope.SYSTEM: _system_scope,
    RoleScope.ORGANIZATION: _organization_scope,
    RoleScope.DEPARTMENT: _department_scope,
    RoleScope.BRANCH: _branch_scope,
}


def scope_filter(view: PrincipalView) -> Dict[str, Any]:
    """
    Data filter a caller should apply for this principal.

    Examples:
        >>> scope_filter(PrincipalView(principal, system_role))
        {}
        >>> scope_filter(PrincipalView(principal, branch_role))
        {'organization_id': 'org-1', 'branch_ids': ['b-1']}

    Raises:
        AuthorizationError: If the principal has no role
    """
    if view.role is None:
        raise AuthorizationError("No role assigned to user", reason=AuthorizationError.NO_ROLE)
    return SCOPE_FILTERS[view.role.scope](view.principal)
