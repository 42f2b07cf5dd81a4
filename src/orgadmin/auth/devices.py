"""
Session and device tracking.

An account holds at most `max_allowed_devices` device sessions. A login from
a new device when the cap is reached evicts the oldest device by insertion
order; the evicted session's refresh token goes with it. Every login appends
a login/logout event to the device, and the account's is_logged_in flag is
recomputed after every login and logout.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from .database import AccountDatabase
from .errors import NotFoundError, ValidationError
from .models import Account, Clock, DeviceSession, LoginEvent, utcnow


def new_device_id() -> str:
    return str(uuid.uuid4())


@dataclass
class LoginRecord:
    """
    Result of recording a login.

    Attributes:
        device_id: Device the login was recorded on
        is_new_device: True if the device was not tracked before
        login_count: Logins recorded on this device so far
        total_devices: Devices tracked after the login
        evicted: Device ids dropped to respect the device cap
    """
    device_id: str
    is_new_device: bool
    login_count: int
    total_devices: int
    evicted: List[str] = field(default_factory=list)


@dataclass
class LogoutRecord:
    """
    Result of recording a logout.

    Attributes:
        logged_out: Device ids whose open event was closed
        is_logged_in: Account flag after the logout
        active_devices: Devices that still have an open event
    """
    logged_out: List[str]
    is_logged_in: bool
    active_devices: List[Dict[str, Any]] = field(default_factory=list)


def describe_device(device: DeviceSession) -> Dict[str, Any]:
    """Client-facing view of a device. Never includes the refresh token."""
    current = device.current_event()
    last_active = current.login_at if current else device.last_login_at
    return {
        "deviceId": device.device_id,
        "ipAddress": device.ip_address,
        "userAgent": device.user_agent,
        "loginCount": device.login_count,
        "lastActive": last_active.isoformat() if last_active else None,
        "lastLoginAt": device.last_login_at.isoformat() if device.last_login_at else None,
        "isActive": device.is_active,
    }


def apply_login(
    account: Account,
    device_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
    now: datetime,
) -> LoginRecord:
    """
    Record a login on `account` in memory.

    A device that still has an open event gets it closed at `now` before the
    new event is appended, so each device has at most one open event.
    """
    device_id = device_id or new_device_id()
    device = account.get_device(device_id)
    evicted: List[str] = []
    is_new = device is None

    if device is None:
        while account.devices and len(account.devices) >= account.max_allowed_devices:
            dropped = account.evict_oldest()
            evicted.append(dropped.device_id)
        device = DeviceSession(device_id=device_id, created_at=now)
        account.add_device(device)

    current = device.current_event()
    if current is not None:
        current.logout_at = now

    device.login_count += 1
    device.ip_address = ip_address
    device.user_agent = user_agent
    device.history.append(LoginEvent(login_at=now))

    account.last_login = now
    account.refresh_logged_in()

    return LoginRecord(
        device_id=device_id,
        is_new_device=is_new,
        login_count=device.login_count,
        total_devices=len(account.devices),
        evicted=evicted,
    )


def apply_logout(account: Account, device_id: Optional[str], now: datetime) -> List[str]:
    """
    Close open events in memory.

    With a device id only that device is closed; without one every device is.
    Closed devices lose their refresh token.

    Returns:
        Device ids whose open event was closed
    """
    if device_id:
        device = account.get_device(device_id)
        targets = [device] if device is not None else []
    else:
        targets = list(account.devices)

    closed = []
    for device in targets:
        current = device.current_event()
        if current is not None:
            current.logout_at = now
            closed.append(device.device_id)
        device.refresh_token = None

    account.refresh_logged_in()
    return closed


class DeviceTracker:
    """
    Device/session bookkeeping for accounts.

    Each operation is a single atomic account mutation.
    """

    def __init__(self, db: AccountDatabase, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def record_login(
        self,
        account_id: str,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginRecord:
        """
        Record a login from a device.

        Args:
            account_id: Account logging in
            device_id: Client-supplied device id; a new one is generated when absent
            ip_address: Client IP address
            user_agent: Client user agent

        Returns:
            LoginRecord
        """
        device_id = device_id or new_device_id()
        now = self.clock()
        record = self.db.mutate_account(
            account_id, lambda account: apply_login(account, device_id, ip_address, user_agent, now)
        )
        for evicted in record.evicted:
            logger.info(f"Device {evicted} evicted from account {account_id} (device limit)")
        return record

    def record_logout(self, account_id: str, device_id: Optional[str] = None) -> LogoutRecord:
        """
        Close the open session on one device, or on every device.

        Unknown device ids are not an error; the result just lists nothing.
        """
        now = self.clock()

        def _logout(account: Account) -> LogoutRecord:
            closed = apply_logout(account, device_id, now)
            return LogoutRecord(
                logged_out=closed,
                is_logged_in=account.is_logged_in,
                active_devices=[describe_device(d) for d in account.active_devices()],
            )

        record = self.db.mutate_account(account_id, _logout)
        logger.info(
            f"Logout on account {account_id}: closed {len(record.logged_out)} device(s), "
            f"{len(record.active_devices)} still active"
        )
        return record

    def logout_device(self, account_id: str, device_id: str) -> LogoutRecord:
        """
        Close the session on one known device.

        Raises:
            ValidationError: If device_id is empty
            NotFoundError: If the device is not tracked on the account
        """
        if not device_id or not device_id.strip():
            raise ValidationError("Device ID is required")

        account = self._require(account_id)
        if account.get_device(device_id) is None:
            raise NotFoundError("Device not found")
        return self.record_logout(account_id, device_id)

    def logout_all(self, account_id: str) -> LogoutRecord:
        return self.record_logout(account_id, None)

    def get_active_devices(self, account_id: str) -> List[Dict[str, Any]]:
        """Devices whose most recent event is still open, with their last-active time."""
        account = self._require(account_id)
        return [describe_device(d) for d in account.active_devices()]

    def list_devices(self, account_id: str) -> List[Dict[str, Any]]:
        """Every tracked device, active or not."""
        account = self._require(account_id)
        return [describe_device(d) for d in account.devices]

    def get_login_history(
        self,
        account_id: str,
        device_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        """
        Flattened login/logout events, newest first, paginated.

        Returns:
            {"loginHistory": [...], "pagination": {total, page, limit, pages}}
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        account = self._require(account_id)
        devices = account.devices
        if device_id:
            devices = [d for d in devices if d.device_id == device_id]

        entries = [
            {
                "deviceId": device.device_id,
                "ipAddress": device.ip_address,
                "userAgent": device.user_agent,
                "loginAt": event.login_at,
                "logoutAt": event.logout_at,
            }
            for device in devices
            for event in device.history
        ]
        entries.sort(key=lambda e: e["loginAt"], reverse=True)

        start = (page - 1) * limit
        page_entries = entries[start:start + limit]
        for entry in page_entries:
            entry["loginAt"] = entry["loginAt"].isoformat()
            entry["logoutAt"] = entry["logoutAt"].isoformat() if entry["logoutAt"] else None

        return {
            "loginHistory": page_entries,
            "pagination": {
                "total": len(entries),
                "page": page,
                "limit": limit,
                "pages": math.ceil(len(entries) / limit),
            },
        }

    def _require(self, account_id: str) -> Account:
        account = self.db.get_account(account_id)
        if account is None:
            raise NotFoundError("User login record not found")
        return account
