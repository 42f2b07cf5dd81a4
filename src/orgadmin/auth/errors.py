"""
Authentication error taxonomy.

Every error raised by the auth core derives from ServiceError, which carries
the HTTP status and stable error code used by the API envelope.
"""

from typing import Optional


class ServiceError(Exception):
    """
    Base class for auth-core exceptions mapped to HTTP responses.

    Attributes:
        message: Client-safe message
        status_code: HTTP status
        error_code: Stable machine-readable code
        detail: Extra client-safe fields for the envelope
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        detail: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or missing input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials (401). The message never says which part was wrong."""
    status_code = 401
    error_code = "unauthorized"


class TokenError(ServiceError):
    """Expired, invalid or superseded token (401)."""
    status_code = 401
    error_code = "invalid_token"


class AccountLockedError(ServiceError):
    """
    Login rejected because of a lock.

    Temporary locks answer 423 with the remaining seconds; permanent locks
    answer 403.
    """

    error_code = "account_locked"

    def __init__(self, remaining_seconds: int = 0, permanent: bool = False):
        self.remaining_seconds = remaining_seconds
        self.permanent = permanent
        if permanent:
            super().__init__(
                "Your account is permanently locked",
                status_code=403,
                detail={"permanent": True},
            )
        else:
            super().__init__(
                f"Account is locked. Try again in {remaining_seconds} seconds",
                status_code=423,
                detail={"permanent": False, "remainingSeconds": remaining_seconds},
            )


class AuthorizationError(ServiceError):
    """
    Access denied (403).

    Attributes:
        reason: "no_role" when the principal has no resolvable role,
            "insufficient_permission" otherwise
    """

    status_code = 403
    error_code = "forbidden"

    NO_ROLE = "no_role"
    INSUFFICIENT_PERMISSION = "insufficient_permission"

    def __init__(self, message: str, reason: str = INSUFFICIENT_PERMISSION, **kwargs):
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("reason", reason)
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason


class NotFoundError(ServiceError):
    """Missing account, device or token (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate username or credentials (400)."""
    status_code = 400
    error_code = "conflict"


class ConcurrentUpdateError(ServiceError):
    """Optimistic-concurrency retries exhausted (409)."""
    status_code = 409
    error_code = "concurrent_update"


class ConfigurationError(RuntimeError):
    """Deployment configuration is unsafe or invalid."""


__all__ = [
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
]
