"""
Audit trail for authentication events.

The auth core writes events to an external sink and never waits on, or fails
because of, that sink: AuditTrail.emit() logs and swallows sink errors.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from loguru import logger

from .models import utcnow


CREDENTIALS_REGISTERED = "CREDENTIALS_REGISTERED"
USER_LOGIN = "USER_LOGIN"
LOGIN_FAILED = "LOGIN_FAILED"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
USER_LOGOUT = "USER_LOGOUT"
USER_LOGOUT_ALL_DEVICES = "USER_LOGOUT_ALL_DEVICES"
DEVICE_EVICTED = "DEVICE_EVICTED"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
ADMIN_RESET_PASSWORD = "ADMIN_RESET_PASSWORD"
ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"


@dataclass
class AuditEvent:
    """
    One audit record.

    Attributes:
        action: Event name (USER_LOGIN, PASSWORD_RESET_COMPLETED, ...)
        user_id: Principal the event is about
        resource_id: Account id the event touched
        status: "success" or "failure"
        changes: What changed (never secrets)
        ip_address: Client IP address
        user_agent: Client user agent
        metadata: Extra context (actor id, endpoint)
        timestamp: When the event happened
    """
    action: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    status: str = "success"
    changes: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the log, bound with audit=True for sink filtering."""

    def __init__(self):
        self._logger = logger.bind(audit=True)

    def record(self, event: AuditEvent) -> None:
        self._logger.bind(event=event.to_dict()).info(
            f"AUDIT {event.action} user={event.user_id} status={event.status}"
        )


class AuditTrail:
    """Fire-and-forget front for an AuditSink."""

    def __init__(self, sink: Optional[AuditSink] = None):
        self.sink = sink if sink is not None else LoggingAuditSink()

    def emit(self, action: str, **fields) -> None:
        """
        Record an event; sink failures are logged and never propagate.

        Args:
            action: Event name
            **fields: AuditEvent fields
        """
        try:
            self.sink.record(AuditEvent(action=action, **fields))
        except Exception as e:
            logger.error(f"Failed to write audit event {action}: {e}")
