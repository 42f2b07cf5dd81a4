"""
Authentication API.

JSON handlers mounted under /api/auth. Login and refresh also set httpOnly
token cookies; logout clears them.
"""

from typing import Optional

from aiohttp import web
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..auth.errors import ValidationError
from ..auth.permissions import Permission
from .middleware import (
    ACCESS_COOKIE,
    MANAGER_KEY,
    REFRESH_COOKIE,
    SETTINGS_KEY,
    client_info,
    current_user,
    login_required,
    parse_body,
    require_permissions,
    success_response,
)


# ============================================================================
# Request bodies
# ============================================================================

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DeviceInfo(_Body):
    id: Optional[str] = None


class LoginBody(_Body):
    username: str = ""
    password: str = ""
    device_info: Optional[DeviceInfo] = Field(default=None, alias="deviceInfo")


class LogoutBody(_Body):
    device_id: Optional[str] = Field(default=None, alias="deviceId")


class RefreshBody(_Body):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class ChangePasswordBody(_Body):
    old_password: str = Field(default="", alias="oldPassword")
    new_password: str = Field(default="", alias="newPassword")
    confirm_password: str = Field(default="", alias="confirmPassword")


class RequestResetBody(_Body):
    username: str = ""


class VerifyTokenBody(_Body):
    reset_token: str = Field(default="", alias="resetToken")


class ResetBody(_Body):
    reset_token: str = Field(default="", alias="resetToken")
    new_password: str = Field(default="", alias="newPassword")
    confirm_password: str = Field(default="", alias="confirmPassword")


class RegisterBody(_Body):
    user_id: str = Field(default="", alias="userId")
    username: str = ""
    password: str = ""
    max_allowed_devices: Optional[int] = Field(default=None, alias="maxAllowedDevices")


class UserIdBody(_Body):
    user_id: str = Field(default="", alias="userId")


# ============================================================================
# Cookies
# ============================================================================

def _set_token_cookie(request: web.Request, response: web.Response, name: str, token: str, max_age: int):
    settings = request.app[SETTINGS_KEY]
    response.set_cookie(
        name,
        token,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="Strict",
    )


def _access_max_age(request: web.Request) -> int:
    return request.app[SETTINGS_KEY].access_token_expiry_minutes * 60


def _refresh_max_age(request: web.Request) -> int:
    return request.app[SETTINGS_KEY].refresh_token_expiry_days * 24 * 60 * 60


def _query_int(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


# ============================================================================
# Login / Logout / Refresh
# ============================================================================

async def handle_login(request: web.Request) -> web.Response:
    """
    POST /api/auth/login
    Body: {"username": "...", "password": "...", "deviceInfo": {"id": "..."}}
    """
    body = await parse_body(request, LoginBody)
    ip_address, user_agent = client_info(request)

    result = request.app[MANAGER_KEY].login(
        body.username,
        body.password,
        device_id=body.device_info.id if body.device_info else None,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    response = success_response(result.to_dict(), "Login successful")
    _set_token_cookie(request, response, ACCESS_COOKIE, result.access_token, _access_max_age(request))
    _set_token_cookie(request, response, REFRESH_COOKIE, result.refresh_token, _refresh_max_age(request))
    return response


@login_required
async def handle_logout(request: web.Request) -> web.Response:
    """
    POST /api/auth/logout
    Body: {"deviceId": "..."} (optional; without it every device is logged out)
    """
    body = await parse_body(request, LogoutBody)
    user = current_user(request)
    ip_address, user_agent = client_info(request)

    record = request.app[MANAGER_KEY].logout(
        user.account_id, body.device_id, ip_address=ip_address, user_agent=user_agent
    )

    if record.is_logged_in:
        message = f"You are still logged in on {len(record.active_devices)} device(s)"
    else:
        message = "You have been logged out from all devices"

    response = success_response({
        "loggedOutDeviceId": body.device_id,
        "isLoggedIn": record.is_logged_in,
        "message": message,
        "activeDevices": record.active_devices,
    }, "Logout successful")
    response.del_cookie(ACCESS_COOKIE, path="/")
    response.del_cookie(REFRESH_COOKIE, path="/")
    return response


async def handle_refresh_token(request: web.Request) -> web.Response:
    """
    POST /api/auth/refresh-token
    Refresh token from the refreshToken cookie or the body.
    """
    body = await parse_body(request, RefreshBody)
    token = request.cookies.get(REFRESH_COOKIE) or body.refresh_token

    access_token = request.app[MANAGER_KEY].refresh(token)

    response = success_response({"accessToken": access_token}, "Token refreshed")
    _set_token_cookie(request, response, ACCESS_COOKIE, access_token, _access_max_age(request))
    return response


@login_required
async def handle_change_password(request: web.Request) -> web.Response:
    """POST /api/auth/change-password"""
    body = await parse_body(request, ChangePasswordBody)
    user = current_user(request)

    request.app[MANAGER_KEY].change_password(
        user.user_id, body.old_password, body.new_password, body.confirm_password
    )
    return success_response({}, "Password changed successfully")


# ============================================================================
# Password reset
# ============================================================================

async def handle_request_reset(request: web.Request) -> web.Response:
    """
    POST /api/auth/request-reset
    Unknown usernames get the same 200 answer without a token.
    """
    body = await parse_body(request, RequestResetBody)
    ip_address, user_agent = client_info(request)

    issued = request.app[MANAGER_KEY].resets.request_reset(
        body.username, ip_address=ip_address, user_agent=user_agent
    )
    if issued is None:
        return success_response({}, "If the username exists, a password reset link will be sent shortly")

    return success_response({
        "resetToken": issued.reset_token,
        "expiresIn": issued.expires_in,
        "expiresAt": issued.expires_at.isoformat(),
        "message": "Password reset token generated. This token is only shown once. Keep it safe.",
    }, f"Password reset token sent. Please use it within {issued.expires_in}.")


async def handle_verify_token(request: web.Request) -> web.Response:
    """POST /api/auth/verify-token"""
    body = await parse_body(request, VerifyTokenBody)
    verified = request.app[MANAGER_KEY].resets.verify(body.reset_token)
    return success_response(verified.to_dict(), "Reset token is valid")


async def handle_reset(request: web.Request) -> web.Response:
    """POST /api/auth/reset"""
    body = await parse_body(request, ResetBody)
    ip_address, user_agent = client_info(request)

    account = request.app[MANAGER_KEY].resets.consume(
        body.reset_token,
        body.new_password,
        body.confirm_password,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return success_response(
        {"username": account.username},
        "Password reset successfully. You can now login with your new password.",
    )


async def handle_reset_status(request: web.Request) -> web.Response:
    """GET /api/auth/reset-status?username=..."""
    status = request.app[MANAGER_KEY].resets.reset_status(request.query.get("username", ""))
    message = "Reset status retrieved" if status["hasPendingReset"] else "No pending reset found"
    return success_response(status, message)


@require_permissions(Permission.USER_UPDATE)
async def handle_admin_reset(request: web.Request) -> web.Response:
    """POST /api/auth/{userId}/admin-reset"""
    admin = current_user(request)
    ip_address, user_agent = client_info(request)

    result = request.app[MANAGER_KEY].resets.admin_reset(
        request.match_info["userId"],
        actor_id=admin.user_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return success_response({
        "username": result.username,
        "tempPassword": result.temp_password,
        "message": "Temporary password generated. Share with user securely.",
    }, "Password reset by admin")


# ============================================================================
# Credentials administration
# ============================================================================

@require_permissions(Permission.USER_CREATE)
async def handle_register(request: web.Request) -> web.Response:
    """POST /api/auth/register"""
    body = await parse_body(request, RegisterBody)
    admin = current_user(request)

    account = request.app[MANAGER_KEY].register_credentials(
        body.user_id,
        body.username,
        body.password,
        max_allowed_devices=body.max_allowed_devices,
        actor_id=admin.user_id,
    )
    return success_response({
        "accountId": account.account_id,
        "userId": account.user_id,
        "username": account.username,
        "maxAllowedDevices": account.max_allowed_devices,
    }, "User registered successfully", status=201)


@require_permissions(Permission.USER_UPDATE)
async def handle_unlock_account(request: web.Request) -> web.Response:
    """POST /api/auth/unlock-account"""
    body = await parse_body(request, UserIdBody)
    if not body.user_id:
        raise ValidationError("UserId is required")

    manager = request.app[MANAGER_KEY]
    manager.unlock_account(body.user_id, actor_id=current_user(request).user_id)
    return success_response(manager.get_login_attempts(body.user_id), "User account unlocked")


# ============================================================================
# Sessions
# ============================================================================

@require_permissions(Permission.USER_READ, allow_self=True)
async def handle_sessions(request: web.Request) -> web.Response:
    """GET /api/auth/sessions/{userId}"""
    sessions = request.app[MANAGER_KEY].get_sessions(request.match_info["userId"])
    return success_response(sessions, "Active sessions retrieved")


@require_permissions(Permission.USER_READ, allow_self=True)
async def handle_login_attempts(request: web.Request) -> web.Response:
    """GET /api/auth/login-attempts/{userId}"""
    attempts = request.app[MANAGER_KEY].get_login_attempts(request.match_info["userId"])
    return success_response(attempts, "Login attempts fetched successfully")


@require_permissions(Permission.USER_READ, allow_self=True)
async def handle_login_history(request: web.Request) -> web.Response:
    """GET /api/auth/login-history/{userId}?deviceId=&page=&limit="""
    manager = request.app[MANAGER_KEY]
    account = manager.account_for_user(request.match_info["userId"])

    history = manager.devices.get_login_history(
        account.account_id,
        device_id=request.query.get("deviceId") or None,
        page=_query_int(request, "page", 1),
        limit=_query_int(request, "limit", 10),
    )
    return success_response(history, "Login history fetched successfully")


@require_permissions(Permission.USER_READ, allow_self=True)
async def handle_active_devices(request: web.Request) -> web.Response:
    """GET /api/auth/active-devices/{userId}"""
    manager = request.app[MANAGER_KEY]
    account = manager.account_for_user(request.match_info["userId"])
    devices = manager.devices.get_active_devices(account.account_id)
    return success_response({"devices": devices}, "Active devices fetched successfully")


@require_permissions(Permission.USER_UPDATE, allow_self=True)
async def handle_logout_device(request: web.Request) -> web.Response:
    """
    POST /api/auth/logout-device/{userId}
    Body: {"deviceId": "..."}
    """
    body = await parse_body(request, LogoutBody)
    if not body.device_id:
        raise ValidationError("Device ID is required")

    manager = request.app[MANAGER_KEY]
    account = manager.account_for_user(request.match_info["userId"])
    record = manager.devices.logout_device(account.account_id, body.device_id)
    logger.info(f"Device {body.device_id} of {account.username} logged out by {current_user(request).user_id}")

    return success_response({
        "isLoggedIn": record.is_logged_in,
        "activeDevices": record.active_devices,
    }, "Logged out from device")


@require_permissions(Permission.USER_UPDATE)
async def handle_logout_all(request: web.Request) -> web.Response:
    """POST /api/auth/logout-all/{userId}"""
    ip_address, user_agent = client_info(request)
    result = request.app[MANAGER_KEY].logout_all(
        request.match_info["userId"],
        actor_id=current_user(request).user_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    result["message"] = f"Logged out from {len(result['loggedOutDevices'])} device(s)"
    return success_response(result, "Logged out from all devices successfully")


def setup_routes(app: web.Application, prefix: str = "/api/auth") -> None:
    """Register the authentication routes on `app`."""
    app.router.add_post(f"{prefix}/login", handle_login)
    app.router.add_post(f"{prefix}/logout", handle_logout)
    app.router.add_post(f"{prefix}/refresh-token", handle_refresh_token)
    app.router.add_post(f"{prefix}/change-password", handle_change_password)

    app.router.add_post(f"{prefix}/request-reset", handle_request_reset)
    app.router.add_post(f"{prefix}/verify-token", handle_verify_token)
    app.router.add_post(f"{prefix}/reset", handle_reset)
    app.router.add_get(f"{prefix}/reset-status", handle_reset_status)
    app.router.add_post(f"{prefix}/{{userId}}/admin-reset", handle_admin_reset)

    app.router.add_post(f"{prefix}/register", handle_register)
    app.router.add_post(f"{prefix}/unlock-account", handle_unlock_account)

    app.router.add_get(f"{prefix}/sessions/{{userId}}", handle_sessions)
    app.router.add_get(f"{prefix}/login-attempts/{{userId}}", handle_login_attempts)
    app.router.add_get(f"{prefix}/login-history/{{userId}}", handle_login_history)
    app.router.add_get(f"{prefix}/active-devices/{{userId}}", handle_active_devices)
    app.router.add_post(f"{prefix}/logout-device/{{userId}}", handle_logout_device)
    app.router.add_post(f"{prefix}/logout-all/{{userId}}", handle_logout_all)
