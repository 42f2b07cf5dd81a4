"""
aiohttp plumbing shared by the API handlers.

- Response envelopes
- Error middleware mapping ServiceError to the envelope
- CORS middleware
- Bearer/cookie authentication and permission guards
- Request body parsing into pydantic models
"""

import functools
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from aiohttp import web
from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..auth.errors import AuthenticationError, ServiceError, ValidationError
from ..auth.permissions import MatchMode, Permission
from ..auth.user_manager import AuthenticatedUser, AuthManager
from ..config import Settings


MANAGER_KEY = web.AppKey("manager", AuthManager)
SETTINGS_KEY = web.AppKey("settings", Settings)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
M = TypeVar("M", bound=BaseModel)


# ============================================================================
# Envelopes
# ============================================================================

def success_response(data: Optional[Dict[str, Any]] = None, message: str = "Success", status: int = 200) -> web.Response:
    return web.json_response({
        "success": True,
        "statusCode": status,
        "message": message,
        "data": data if data is not None else {},
    }, status=status)


def error_response(status: int, error: str, message: str, details: Optional[Dict[str, Any]] = None) -> web.Response:
    return web.json_response({
        "success": False,
        "statusCode": status,
        "error": error,
        "message": message,
        "details": details or {},
    }, status=status)


# ============================================================================
# Middlewares
# ============================================================================

@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Turn domain errors into the error envelope; hide unexpected faults."""
    try:
        return await handler(request)
    except ServiceError as e:
        logger.warning(f"{request.method} {request.path} -> {e.status_code} {e.error_code}: {e.message}")
        return error_response(e.status_code, e.error_code, e.message, e.detail)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        settings = request.app[SETTINGS_KEY]
        details = {} if settings.is_production else {"exception": f"{type(e).__name__}: {e}"}
        return error_response(500, "internal_error", "Internal server error", details)


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Add CORS headers for allow-listed origins (CORS_ORIGINS)."""
    if request.method == "OPTIONS":
        response = web.Response()
    else:
        response = await handler(request)

    origin = request.headers.get("Origin")
    if origin:
        response.headers["Vary"] = "Origin"
    if not request.app[SETTINGS_KEY].allows_origin(origin):
        return response

    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return response


# ============================================================================
# Request helpers
# ============================================================================

async def parse_body(request: web.Request, model: Type[M]) -> M:
    """
    Parse the JSON body into `model`.

    An empty body parses as {}; missing fields are left to the model defaults
    so the domain layer can report them.

    Raises:
        ValidationError: On malformed JSON or fields of the wrong type
    """
    data: Any = {}
    if request.body_exists:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body must be valid JSON")

    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        first = errors[0] if errors else {"field": "body", "message": "invalid"}
        raise ValidationError(f"Invalid {first['field']}: {first['message']}", detail={"errors": errors})


def client_info(request: web.Request) -> Tuple[Optional[str], Optional[str]]:
    """
    (ip_address, user_agent) of the caller.

    X-Forwarded-For is only honoured when the direct peer is listed in
    TRUSTED_PROXIES.
    """
    ip_address = request.remote
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and ip_address in request.app[SETTINGS_KEY].trusted_proxies:
        ip_address = forwarded.split(",")[0].strip() or ip_address
    return ip_address, request.headers.get("User-Agent")


def get_access_token(request: web.Request) -> Optional[str]:
    """Bearer token from the Authorization header, else the accessToken cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(ACCESS_COOKIE)


def current_user(request: web.Request) -> AuthenticatedUser:
    """Identity set by the guards. Handlers behind a guard can rely on it."""
    user = request.get("user")
    if user is None:
        raise AuthenticationError("Authentication required")
    return user


def _authenticate(request: web.Request) -> AuthenticatedUser:
    manager = request.app[MANAGER_KEY]
    user = manager.authenticate(get_access_token(request))
    request["user"] = user
    return user


# ============================================================================
# Guards
# ============================================================================

def login_required(handler: Handler) -> Handler:
    """Reject requests without a valid access token."""

    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        _authenticate(request)
        return await handler(request)

    return wrapper


def require_permissions(*codes: Permission, mode: MatchMode = MatchMode.ANY, allow_self: bool = False):
    """
    Require an authenticated caller whose role grants `codes`.

    Args:
        *codes: Required permission codes
        mode: ANY or ALL
        allow_self: Let the caller through without the permissions when the
            route's {userId} is their own id

    Examples:
        >>> @require_permissions(Permission.USER_UPDATE)
        ... async def handle_unlock(request): ...
    """

    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(request: web.Request) -> web.StreamResponse:
            user = _authenticate(request)
            if allow_self and request.match_info.get("userId") == user.user_id:
                return await handler(request)

            manager = request.app[MANAGER_KEY]
            request["view"] = manager.gate.require(user.principal, codes, mode)
            return await handler(request)

        return wrapper

    return decorator
