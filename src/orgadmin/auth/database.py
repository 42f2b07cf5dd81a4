"""
SQLite database for the authentication core.

Thread-safe store for principals, roles, login accounts (with their device
sessions and login events) and password reset records.

Accounts are written with optimistic concurrency: every account row carries a
version, and update_account() only writes when the version it loaded is still
current. mutate_account() wraps load/modify/save in a retry loop; all lockout
counters, device lists and refresh tokens are changed through it.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, TypeVar

from loguru import logger

from .errors import AuthorizationError, ConcurrentUpdateError, ConflictError, NotFoundError
from .models import (
    Account,
    DeviceSession,
    LoginEvent,
    PasswordResetToken,
    Principal,
    ResetReason,
    Role,
    RoleScope,
)


T = TypeVar("T")

DEFAULT_MUTATION_ATTEMPTS = 5


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class AccountDatabase:
    """
    Thread-safe authentication database.

    Every public method opens its own connection under a process-wide
    threading.RLock. Multi-statement writes run inside BEGIN IMMEDIATE so they
    are atomic with respect to other processes sharing the file.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS principals (
                    user_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT,
                    organization_id TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user',
                    role_code TEXT,
                    department_id TEXT,
                    branch_ids TEXT NOT NULL DEFAULT '[]',
                    can_login INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    is_blocked INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS roles (
                    code TEXT PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    level INTEGER NOT NULL CHECK (level BETWEEN 1 AND 5),
                    permissions TEXT NOT NULL DEFAULT '[]',
                    scope TEXT NOT NULL DEFAULT 'ORGANIZATION',
                    description TEXT,
                    is_system_role INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    organization_id TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    user_id TEXT UNIQUE NOT NULL,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
                    lock_level INTEGER NOT NULL DEFAULT 0,
                    lock_until TEXT,
                    is_permanently_locked INTEGER NOT NULL DEFAULT 0,
                    is_logged_in INTEGER NOT NULL DEFAULT 0,
                    last_login TEXT,
                    max_allowed_devices INTEGER NOT NULL DEFAULT 2,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES principals(user_id)
                )
            """)

            # seq preserves insertion order for FIFO eviction
            conn.execute("""
                CREATE TABLE IF NOT EXISTS device_sessions (
                    account_id TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT,
                    login_count INTEGER NOT NULL DEFAULT 0,
                    refresh_token TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (account_id, device_id),
                    FOREIGN KEY (account_id) REFERENCES accounts(account_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS login_events (
                    account_id TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    login_at TEXT NOT NULL,
                    logout_at TEXT,
                    PRIMARY KEY (account_id, device_id, seq),
                    FOREIGN KEY (account_id, device_id)
                        REFERENCES device_sessions(account_id, device_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS password_resets (
                    reset_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    token_hash TEXT UNIQUE NOT NULL,
                    expires_at TEXT NOT NULL,
                    is_used INTEGER NOT NULL DEFAULT 0,
                    used_at TEXT,
                    reason TEXT NOT NULL DEFAULT 'user_request',
                    ip_address TEXT,
                    user_agent TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (account_id) REFERENCES accounts(account_id) ON DELETE CASCADE
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_devices_account ON device_sessions(account_id, seq)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_resets_account ON password_resets(account_id, is_used)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_resets_expiry ON password_resets(expires_at)")

        logger.info(f"Auth database initialized: {self.db_path}")

    # ========================================================================
    # Principal Operations
    # ========================================================================

    def create_principal(self, principal: Principal) -> Principal:
        """
        Insert a principal.

        Raises:
            ConflictError: If the user_id already exists
        """
        if principal.created_at is None:
            principal.created_at = datetime.now(timezone.utc)

        try:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO principals (user_id, name, email, organization_id, role, role_code,
                                            department_id, branch_ids, can_login, is_active, is_blocked, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    principal.user_id,
                    principal.name,
                    principal.email,
                    principal.organization_id,
                    principal.role,
                    principal.role_code,
                    principal.department_id,
                    json.dumps(principal.branch_ids),
                    1 if principal.can_login else 0,
                    1 if principal.is_active else 0,
                    1 if principal.is_blocked else 0,
                    _ts(principal.created_at),
                ))
        except sqlite3.IntegrityError:
            raise ConflictError(f"Principal already exists: {principal.user_id}")

        logger.info(f"Principal created: {principal.user_id}")
        return principal

    def get_principal(self, user_id: str) -> Optional[Principal]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM principals WHERE user_id = ?", (user_id,)).fetchone()

        if not row:
            return None

        return Principal(
            user_id=row["user_id"],
            name=row["name"],
            email=row["email"],
            organization_id=row["organization_id"],
            role=row["role"],
            role_code=row["role_code"],
            department_id=row["department_id"],
            branch_ids=json.loads(row["branch_ids"]),
            can_login=bool(row["can_login"]),
            is_active=bool(row["is_active"]),
            is_blocked=bool(row["is_blocked"]),
            created_at=_dt(row["created_at"]),
        )

    def update_principal(self, principal: Principal) -> bool:
        """
        Update principal flags and role assignment.

        Returns:
            True if update succeeded
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE principals
                SET name = ?, email = ?, role = ?, role_code = ?, department_id = ?, branch_ids = ?,
                    can_login = ?, is_active = ?, is_blocked = ?
                WHERE user_id = ?
            """, (
                principal.name,
                principal.email,
                principal.role,
                principal.role_code,
                principal.department_id,
                json.dumps(principal.branch_ids),
                1 if principal.can_login else 0,
                1 if principal.is_active else 0,
                1 if principal.is_blocked else 0,
                principal.user_id,
            ))
            return cursor.rowcount > 0

    def set_can_login(self, user_id: str, can_login: bool) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE principals SET can_login = ? WHERE user_id = ?",
                (1 if can_login else 0, user_id),
            )
            return cursor.rowcount > 0

    # ========================================================================
    # Role Operations
    # ========================================================================

    def _role_from_row(self, row: sqlite3.Row) -> Role:
        return Role(
            code=row["code"],
            name=row["name"],
            level=row["level"],
            permissions=frozenset(json.loads(row["permissions"])),
            scope=RoleScope(row["scope"]),
            description=row["description"] or "",
            is_system_role=bool(row["is_system_role"]),
            is_active=bool(row["is_active"]),
            organization_id=row["organization_id"],
        )

    def get_role(self, code: str) -> Optional[Role]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM roles WHERE code = ?", (code,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM roles ORDER BY level DESC, code").fetchall()
        return [self._role_from_row(row) for row in rows]

    def insert_role_if_missing(self, role: Role) -> bool:
        """
        Insert a role unless its code already exists.

        Returns:
            True if the role was inserted
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO roles (code, name, level, permissions, scope, description,
                                             is_system_role, is_active, organization_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._role_params(role))
            return cursor.rowcount > 0

    def save_role(self, role: Role) -> Role:
        """
        Insert or replace a custom role.

        Raises:
            AuthorizationError: If the existing role is a system role
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT is_system_role FROM roles WHERE code = ?", (role.code,)).fetchone()
            if row and row["is_system_role"]:
                raise AuthorizationError(f"System role {role.code} cannot be modified")

            conn.execute("""
                INSERT OR REPLACE INTO roles (code, name, level, permissions, scope, description,
                                              is_system_role, is_active, organization_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._role_params(role))

        logger.info(f"Role saved: {role.code}")
        return role

    @staticmethod
    def _role_params(role: Role) -> tuple:
        return (
            role.code,
            role.name,
            role.level,
            json.dumps(sorted(role.permissions)),
            role.scope.value,
            role.description,
            1 if role.is_system_role else 0,
            1 if role.is_active else 0,
            role.organization_id,
        )

    # ========================================================================
    # Account Operations
    # ========================================================================

    def create_account(self, account: Account) -> Account:
        """
        Insert login credentials for a principal.

        Raises:
            ConflictError: If the principal already has credentials or the
                username is taken
        """
        now = datetime.now(timezone.utc)
        if account.created_at is None:
            account.created_at = now

        try:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO accounts (account_id, user_id, username, password_hash, max_allowed_devices,
                                          version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """, (
                    account.account_id,
                    account.user_id,
                    account.username,
                    account.password_hash,
                    account.max_allowed_devices,
                    _ts(account.created_at),
                    _ts(now),
                ))
        except sqlite3.IntegrityError as e:
            message = str(e)
            if "username" in message:
                raise ConflictError("Username already taken")
            if "user_id" in message:
                raise ConflictError("Login credentials already exist for this user")
            raise ConflictError("Login credentials could not be created")

        account.version = 0
        logger.info(f"Account created: {account.username} ({account.account_id})")
        return account

    def _load_account(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Account:
        account_id = row["account_id"]

        events_by_device = {}
        for event in conn.execute(
            "SELECT * FROM login_events WHERE account_id = ? ORDER BY device_id, seq", (account_id,)
        ):
            events_by_device.setdefault(event["device_id"], []).append(
                LoginEvent(login_at=_dt(event["login_at"]), logout_at=_dt(event["logout_at"]))
            )

        devices = [
            DeviceSession(
                device_id=device["device_id"],
                ip_address=device["ip_address"],
                user_agent=device["user_agent"],
                login_count=device["login_count"],
                refresh_token=device["refresh_token"],
                history=events_by_device.get(device["device_id"], []),
                created_at=_dt(device["created_at"]),
            )
            for device in conn.execute(
                "SELECT * FROM device_sessions WHERE account_id = ? ORDER BY seq", (account_id,)
            )
        ]

        return Account(
            account_id=account_id,
            user_id=row["user_id"],
            username=row["username"],
            password_hash=row["password_hash"],
            failed_login_attempts=row["failed_login_attempts"],
            lock_level=row["lock_level"],
            lock_until=_dt(row["lock_until"]),
            is_permanently_locked=bool(row["is_permanently_locked"]),
            is_logged_in=bool(row["is_logged_in"]),
            last_login=_dt(row["last_login"]),
            max_allowed_devices=row["max_allowed_devices"],
            version=row["version"],
            created_at=_dt(row["created_at"]),
            devices=devices,
        )

    def _get_account_where(self, column: str, value: str) -> Optional[Account]:
        with self._read() as conn:
            row = conn.execute(f"SELECT * FROM accounts WHERE {column} = ?", (value,)).fetchone()
            if not row:
                return None
            return self._load_account(conn, row)

    def get_account(self, account_id: str) -> Optional[Account]:
        """Load an account with its devices and login events."""
        return self._get_account_where("account_id", account_id)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._get_account_where("username", username.strip().lower())

    def get_account_by_user(self, user_id: str) -> Optional[Account]:
        return self._get_account_where("user_id", user_id)

    def update_account(self, account: Account) -> bool:
        """
        Write an account aggregate if nobody else changed it since it was loaded.

        The account row, its device sessions and login events are replaced in
        one transaction. On success account.version is advanced.

        Returns:
            False if the stored version no longer matches account.version
        """
        now = datetime.now(timezone.utc)

        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE accounts
                SET password_hash = ?, failed_login_attempts = ?, lock_level = ?, lock_until = ?,
                    is_permanently_locked = ?, is_logged_in = ?, last_login = ?, max_allowed_devices = ?,
                    version = version + 1, updated_at = ?
                WHERE account_id = ? AND version = ?
            """, (
                account.password_hash,
                account.failed_login_attempts,
                account.lock_level,
                _ts(account.lock_until),
                1 if account.is_permanently_locked else 0,
                1 if account.is_logged_in else 0,
                _ts(account.last_login),
                account.max_allowed_devices,
                _ts(now),
                account.account_id,
                account.version,
            ))
            if cursor.rowcount == 0:
                return False

            conn.execute("DELETE FROM login_events WHERE account_id = ?", (account.account_id,))
            conn.execute("DELETE FROM device_sessions WHERE account_id = ?", (account.account_id,))

            for seq, device in enumerate(account.devices):
                conn.execute("""
                    INSERT INTO device_sessions (account_id, device_id, seq, ip_address, user_agent,
                                                 login_count, refresh_token, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    account.account_id,
                    device.device_id,
                    seq,
                    device.ip_address,
                    device.user_agent,
                    device.login_count,
                    device.refresh_token,
                    _ts(device.created_at or now),
                ))
                conn.executemany("""
                    INSERT INTO login_events (account_id, device_id, seq, login_at, logout_at)
                    VALUES (?, ?, ?, ?, ?)
                """, [
                    (account.account_id, device.device_id, i, _ts(e.login_at), _ts(e.logout_at))
                    for i, e in enumerate(device.history)
                ])

        account.version += 1
        return True

    def mutate_account(
        self,
        account_id: str,
        mutator: Callable[[Account], T],
        max_attempts: int = DEFAULT_MUTATION_ATTEMPTS,
    ) -> T:
        """
        Apply `mutator` to a fresh copy of the account and save it atomically.

        The mutator may run several times if concurrent writers win the
        compare-and-set, so it must only touch the account it is given. If it
        raises, nothing is written.

        Args:
            account_id: Account to modify
            mutator: Function that edits the account and returns a result
            max_attempts: Compare-and-set attempts before giving up

        Returns:
            The mutator's result from the attempt that was saved

        Raises:
            NotFoundError: If the account does not exist
            ConcurrentUpdateError: If every attempt lost the race
        """
        for attempt in range(1, max_attempts + 1):
            account = self.get_account(account_id)
            if account is None:
                raise NotFoundError("User login record not found")

            result = mutator(account)
            if self.update_account(account):
                return result

            logger.debug(f"Concurrent update on account {account_id}, retry {attempt}/{max_attempts}")

        logger.warning(f"Gave up updating account {account_id} after {max_attempts} attempts")
        raise ConcurrentUpdateError("Account is being modified concurrently, try again")

    # ========================================================================
    # Password Reset Operations
    # ========================================================================

    def _reset_from_row(self, row: sqlite3.Row) -> PasswordResetToken:
        return PasswordResetToken(
            reset_id=row["reset_id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            token_hash=row["token_hash"],
            expires_at=_dt(row["expires_at"]),
            is_used=bool(row["is_used"]),
            used_at=_dt(row["used_at"]),
            reason=ResetReason(row["reason"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            created_at=_dt(row["created_at"]),
        )

    def issue_reset_token(self, record: PasswordResetToken) -> int:
        """
        Invalidate every unused token of the account and insert `record`, atomically.

        Returns:
            Number of prior tokens invalidated
        """
        now = record.created_at or datetime.now(timezone.utc)
        record.created_at = now

        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE password_resets SET is_used = 1, used_at = ? WHERE account_id = ? AND is_used = 0",
                (_ts(now), record.account_id),
            )
            invalidated = cursor.rowcount

            conn.execute("""
                INSERT INTO password_resets (reset_id, user_id, account_id, token_hash, expires_at, is_used,
                                             used_at, reason, ip_address, user_agent, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.reset_id,
                record.user_id,
                record.account_id,
                record.token_hash,
                _ts(record.expires_at),
                1 if record.is_used else 0,
                _ts(record.used_at),
                record.reason.value,
                record.ip_address,
                record.user_agent,
                _ts(now),
            ))

        return invalidated

    def get_reset_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM password_resets WHERE token_hash = ?", (token_hash,)).fetchone()
        return self._reset_from_row(row) if row else None

    def consume_reset_token(self, token_hash: str, password_hash: str, now: datetime) -> Optional[PasswordResetToken]:
        """
        Claim a valid token and store the new password hash in one transaction.

        The claim is a conditional update, so at most one caller can win it.
        The account's other unused tokens are invalidated and its version is
        advanced, so concurrent compare-and-set writers reload the new hash.
        If any step fails the token stays unused.

        Returns:
            The claimed record, or None if the token is unknown, used or expired

        Raises:
            NotFoundError: If the token's account no longer exists
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE password_resets SET is_used = 1, used_at = ?
                WHERE token_hash = ? AND is_used = 0 AND expires_at > ?
            """, (_ts(now), token_hash, _ts(now)))
            if cursor.rowcount != 1:
                return None

            row = conn.execute("SELECT * FROM password_resets WHERE token_hash = ?", (token_hash,)).fetchone()
            conn.execute(
                "UPDATE password_resets SET is_used = 1, used_at = ? WHERE account_id = ? AND is_used = 0",
                (_ts(now), row["account_id"]),
            )

            cursor = conn.execute("""
                UPDATE accounts SET password_hash = ?, version = version + 1, updated_at = ?
                WHERE account_id = ?
            """, (password_hash, _ts(datetime.now(timezone.utc)), row["account_id"]))
            if cursor.rowcount != 1:
                raise NotFoundError("User login record not found")

        return self._reset_from_row(row)

    def invalidate_reset_tokens(self, account_id: str, now: datetime) -> int:
        """Mark every unused token of the account as used."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE password_resets SET is_used = 1, used_at = ? WHERE account_id = ? AND is_used = 0",
                (_ts(now), account_id),
            )
            return cursor.rowcount

    def get_pending_reset(self, account_id: str, now: datetime) -> Optional[PasswordResetToken]:
        """Most recent unused, unexpired token of the account."""
        with self._read() as conn:
            row = conn.execute("""
                SELECT * FROM password_resets
                WHERE account_id = ? AND is_used = 0 AND expires_at > ?
                ORDER BY created_at DESC LIMIT 1
            """, (account_id, _ts(now))).fetchone()
        return self._reset_from_row(row) if row else None

    def purge_expired_reset_tokens(self, now: datetime) -> int:
        """
        Remove expired reset records.

        Returns:
            Number of records deleted
        """
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM password_resets WHERE expires_at <= ?", (_ts(now),))
            deleted = cursor.rowcount

        if deleted > 0:
            logger.info(f"Purged {deleted} expired password reset tokens")

        return deleted
