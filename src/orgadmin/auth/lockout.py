"""
Account lockout policy.

Pure decision logic mapping consecutive failed attempts to a lock state:

    attempts  level  lock
    < 5       0      none
    5         1      60s
    6         2      180s
    7         3      300s
    >= 8      4      permanent

Attempts made while a lock is active are rejected before reaching the
counter, so temporary locks never escalate from attempts made during them.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from .models import Account


LOCK_THRESHOLD = 5
PERMANENT_LOCK_LEVEL = 4

# lock level -> temporary lock duration
LOCK_DURATIONS: Dict[int, timedelta] = {
    1: timedelta(seconds=60),
    2: timedelta(seconds=180),
    3: timedelta(seconds=300),
}


@dataclass(frozen=True)
class LockDecision:
    """
    Lock state computed from a failed-attempt count.

    Attributes:
        lock_level: 0-4
        duration: Temporary lock length, None when unlocked or permanent
        permanent: True at level 4
    """
    lock_level: int
    duration: Optional[timedelta] = None
    permanent: bool = False

    @property
    def is_locked(self) -> bool:
        return self.permanent or self.duration is not None


def lock_for_attempts(failed_attempts: int) -> LockDecision:
    """
    Map a failed-attempt count to a lock decision.

    Examples:
        >>> lock_for_attempts(4).lock_level
        0
        >>> lock_for_attempts(6).duration
        datetime.timedelta(seconds=180)
        >>> lock_for_attempts(12).permanent
        True
    """
    if failed_attempts < LOCK_THRESHOLD:
        return LockDecision(lock_level=0)

    level = min(failed_attempts - LOCK_THRESHOLD + 1, PERMANENT_LOCK_LEVEL)
    if level == PERMANENT_LOCK_LEVEL:
        return LockDecision(lock_level=level, permanent=True)
    return LockDecision(lock_level=level, duration=LOCK_DURATIONS[level])


def active_lock(account: Account, now: datetime) -> Optional[LockDecision]:
    """Return the lock currently blocking logins on `account`, if any."""
    if account.is_permanently_locked:
        return LockDecision(lock_level=PERMANENT_LOCK_LEVEL, permanent=True)
    if account.lock_until is not None and account.lock_until > now:
        return LockDecision(lock_level=account.lock_level, duration=account.lock_until - now)
    return None


def apply_failure(account: Account, now: datetime) -> LockDecision:
    """Increment the failure counter and persist the resulting lock on the account."""
    account.failed_login_attempts += 1
    decision = lock_for_attempts(account.failed_login_attempts)

    account.lock_level = decision.lock_level
    if decision.permanent:
        account.is_permanently_locked = True
        account.lock_until = None
    elif decision.duration is not None:
        account.lock_until = now + decision.duration

    return decision


def apply_success(account: Account) -> None:
    """Reset the counter after a successful verification."""
    account.failed_login_attempts = 0
    account.lock_level = 0
    account.lock_until = None


def unlock(account: Account) -> None:
    """Administrative unlock: clear every lock field, including permanence."""
    apply_success(account)
    account.is_permanently_locked = False
