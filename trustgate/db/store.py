"""
SQLite Trust Store
==================

Persists accounts, their device registries and device change requests.

Security Properties:
- Parameterized queries only (SQL injection safe)
- One pending request per (account, device), enforced by a partial
  unique index
- Request resolution is a compare-and-swap on status
- Write transactions take the database write lock up front
  (BEGIN IMMEDIATE), so load/decide/save sequences are serialized
- Any sqlite failure rolls the whole unit of work back

Usage:
    store = SQLiteTrustStore(db_path)
    store.initialize_db()

    with store.transaction() as session:
        user = session.load_user(user_id)
        ...
        session.save_registry(user)
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Final, Iterator, List, Optional

from trustgate.core.device.fingerprint import FingerprintVector
from trustgate.core.device.registry import (
    DeviceInfo,
    DeviceRecord,
    DeviceRegistry,
    Role,
    UserTrustState,
)
from trustgate.core.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    TrustGateError,
)
from trustgate.core.requests.change_request import ChangeRequest, RequestStatus


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dump_info(info: Optional[DeviceInfo]) -> Optional[str]:
    return json.dumps(info.to_dict()) if info else None


def _load_info(value: Optional[str]) -> Optional[DeviceInfo]:
    return DeviceInfo.from_dict(json.loads(value)) if value else None


def _is_unique_violation(error: sqlite3.IntegrityError) -> bool:
    return "UNIQUE" in str(error).upper()


class TrustSession:
    """
    Store operations bound to one open connection.

    Obtained from SQLiteTrustStore.transaction() or .read(); never
    constructed directly by callers.
    """

    __slots__ = ("_conn",)

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # Accounts

    def find_user(self, user_id: str) -> Optional[UserTrustState]:
        row = self._conn.execute(
            "SELECT * FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if not row:
            return None

        device_rows = self._conn.execute("""
            SELECT * FROM registered_devices
            WHERE user_id = ?
            ORDER BY position ASC
        """, (user_id,)).fetchall()

        registry = DeviceRegistry(
            [self._row_to_device(r) for r in device_rows],
            current_device_id=row["current_device_id"],
        )
        return UserTrustState(
            user_id=row["id"],
            username=row["username"],
            email=row["email"],
            role=Role.from_string(row["role"]),
            is_active=bool(row["is_active"]),
            registry=registry,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def load_user(self, user_id: str) -> UserTrustState:
        """
        Load an account with its registry.

        Raises:
            NotFoundError: If the account does not exist
        """
        user = self.find_user(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def insert_user(self, user: UserTrustState) -> None:
        """
        Insert a new account (and any devices it already carries).

        Raises:
            ConflictError: If the id or username is taken
        """
        now = datetime.now(timezone.utc).isoformat()
        try:
            self._conn.execute("""
                INSERT INTO users (id, username, email, role, is_active,
                                   current_device_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
            """, (
                user.user_id,
                user.username,
                user.email,
                user.role.name,
                1 if user.is_active else 0,
                user.created_at.isoformat(),
                now,
            ))
        except sqlite3.IntegrityError as e:
            if not _is_unique_violation(e):
                raise
            raise ConflictError(f"User '{user.username}' already exists") from None
        self.save_registry(user)

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        result = self._conn.execute("""
            UPDATE users SET is_active = ?, updated_at = ? WHERE id = ?
        """, (1 if is_active else 0, datetime.now(timezone.utc).isoformat(), user_id))
        if result.rowcount == 0:
            raise NotFoundError("User not found.")

    def save_registry(self, user: UserTrustState) -> None:
        """Replace the stored registry of an account with `user.registry`."""
        self._conn.execute(
            "DELETE FROM registered_devices WHERE user_id = ?", (user.user_id,)
        )
        self._conn.executemany("""
            INSERT INTO registered_devices
            (user_id, device_id, position, user_agent, ip_address, platform,
             location, attributes, registered_at, last_used)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (
                user.user_id,
                record.device_id,
                position,
                record.device_info.user_agent,
                record.device_info.ip_address,
                record.device_info.platform,
                record.device_info.location,
                json.dumps(record.attributes.to_dict()),
                record.registered_at.isoformat(),
                record.last_used.isoformat(),
            )
            for position, record in enumerate(user.registry.records())
        ])
        result = self._conn.execute("""
            UPDATE users SET current_device_id = ?, updated_at = ? WHERE id = ?
        """, (
            user.registry.current_device_id,
            datetime.now(timezone.utc).isoformat(),
            user.user_id,
        ))
        if result.rowcount == 0:
            raise NotFoundError("User not found.")

    def count_users(self, active_only: bool = False) -> int:
        if active_only:
            return self._conn.execute(
                "SELECT COUNT(*) FROM users WHERE is_active = 1"
            ).fetchone()[0]
        return self._conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def list_users(self, limit: int, offset: int = 0) -> List[UserTrustState]:
        """Accounts newest first, each with its registry."""
        rows = self._conn.execute("""
            SELECT id FROM users
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
        """, (limit, offset)).fetchall()
        return [self.load_user(row["id"]) for row in rows]

    # Change requests

    def get_request(self, request_id: str) -> Optional[ChangeRequest]:
        row = self._conn.execute(
            "SELECT * FROM device_change_requests WHERE id = ?", (request_id,)
        ).fetchone()
        return self._row_to_request(row) if row else None

    def find_pending_request(self, user_id: str, device_id: str) -> Optional[ChangeRequest]:
        row = self._conn.execute("""
            SELECT * FROM device_change_requests
            WHERE user_id = ? AND new_device_id = ? AND status = ?
        """, (user_id, device_id, RequestStatus.PENDING.value)).fetchone()
        return self._row_to_request(row) if row else None

    def insert_request(self, request: ChangeRequest) -> None:
        """
        Insert a pending request.

        Raises:
            ConflictError: If a pending request for the same
                (account, device) already exists
        """
        try:
            self._conn.execute("""
                INSERT INTO device_change_requests
                (id, user_id, username, email, current_device_id, new_device_id,
                 new_device_info, current_device_info, new_device_attributes,
                 status, requested_at, reviewed_at, reviewed_by, reason, admin_notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                request.id,
                request.user_id,
                request.username,
                request.email,
                request.current_device_id,
                request.new_device_id,
                _dump_info(request.new_device_info),
                _dump_info(request.current_device_info),
                json.dumps(request.new_device_attributes.to_dict()),
                request.status.value,
                request.requested_at.isoformat(),
                _to_iso(request.reviewed_at),
                request.reviewed_by,
                request.reason,
                request.admin_notes,
            ))
        except sqlite3.IntegrityError as e:
            if not _is_unique_violation(e):
                raise
            raise ConflictError(
                "Device change request already exists for this device."
            ) from None

    def resolve_request(self, request: ChangeRequest) -> None:
        """
        Persist a terminal request, only if the stored one is still pending.

        Raises:
            ConflictError: If another reviewer resolved it first
        """
        result = self._conn.execute("""
            UPDATE device_change_requests
            SET status = ?, reviewed_at = ?, reviewed_by = ?, admin_notes = ?, reason = ?
            WHERE id = ? AND status = ?
        """, (
            request.status.value,
            _to_iso(request.reviewed_at),
            request.reviewed_by,
            request.admin_notes,
            request.reason,
            request.id,
            RequestStatus.PENDING.value,
        ))
        if result.rowcount != 1:
            raise ConflictError("Request has already been processed.")

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ChangeRequest]:
        where, params = self._request_filter(status, user_id)
        query = f"SELECT * FROM device_change_requests{where} ORDER BY requested_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_request(row) for row in rows]

    def count_requests(
        self,
        status: Optional[RequestStatus] = None,
        user_id: Optional[str] = None,
    ) -> int:
        where, params = self._request_filter(status, user_id)
        return self._conn.execute(
            f"SELECT COUNT(*) FROM device_change_requests{where}", params
        ).fetchone()[0]

    @staticmethod
    def _request_filter(
        status: Optional[RequestStatus],
        user_id: Optional[str],
    ) -> tuple[str, list]:
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    # Row mapping

    @staticmethod
    def _row_to_device(row: sqlite3.Row) -> DeviceRecord:
        return DeviceRecord(
            device_id=row["device_id"],
            device_info=DeviceInfo(
                user_agent=row["user_agent"],
                ip_address=row["ip_address"],
                platform=row["platform"],
                location=row["location"],
            ),
            attributes=FingerprintVector.from_dict(json.loads(row["attributes"])),
            registered_at=datetime.fromisoformat(row["registered_at"]),
            last_used=datetime.fromisoformat(row["last_used"]),
        )

    @staticmethod
    def _row_to_request(row: sqlite3.Row) -> ChangeRequest:
        new_info = _load_info(row["new_device_info"]) or DeviceInfo()
        if row["new_device_attributes"]:
            attributes = FingerprintVector.from_dict(json.loads(row["new_device_attributes"]))
        else:
            attributes = FingerprintVector(
                user_agent=new_info.user_agent,
                platform=new_info.platform,
            )
        return ChangeRequest(
            id=row["id"],
            user_id=row["user_id"],
            username=row["username"],
            email=row["email"],
            current_device_id=row["current_device_id"],
            new_device_id=row["new_device_id"],
            new_device_info=new_info,
            new_device_attributes=attributes,
            current_device_info=_load_info(row["current_device_info"]),
            status=RequestStatus.parse(row["status"]),
            requested_at=datetime.fromisoformat(row["requested_at"]),
            reviewed_at=_from_iso(row["reviewed_at"]),
            reviewed_by=row["reviewed_by"],
            reason=row["reason"],
            admin_notes=row["admin_notes"],
        )


class SQLiteTrustStore:
    """
    SQLite backend for accounts, device registries and change requests.

    Each unit of work opens its own connection, so a store instance can be
    shared between threads.
    """

    __slots__ = ("_db_path", "_timeout")

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT UNIQUE NOT NULL COLLATE NOCASE,
        email TEXT,
        role TEXT NOT NULL DEFAULT 'USER',
        is_active INTEGER NOT NULL DEFAULT 1,
        current_device_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);

    CREATE TABLE IF NOT EXISTS registered_devices (
        user_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        user_agent TEXT NOT NULL,
        ip_address TEXT,
        platform TEXT NOT NULL,
        location TEXT,
        attributes TEXT NOT NULL,
        registered_at TEXT NOT NULL,
        last_used TEXT NOT NULL,
        PRIMARY KEY (user_id, device_id),
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS device_change_requests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        username TEXT NOT NULL,
        email TEXT,
        current_device_id TEXT NOT NULL,
        new_device_id TEXT NOT NULL,
        new_device_info TEXT NOT NULL,
        current_device_info TEXT,
        new_device_attributes TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'approved', 'rejected')),
        requested_at TEXT NOT NULL,
        reviewed_at TEXT,
        reviewed_by TEXT,
        reason TEXT,
        admin_notes TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id)
    );

    CREATE UNIQUE INDEX IF NOT EXISTS uq_requests_pending_device
        ON device_change_requests(user_id, new_device_id)
        WHERE status = 'pending';
    CREATE INDEX IF NOT EXISTS idx_requests_user_status
        ON device_change_requests(user_id, status);
    CREATE INDEX IF NOT EXISTS idx_requests_status_time
        ON device_change_requests(status, requested_at);
    """

    def __init__(self, db_path: Path | str, busy_timeout: float = 5.0) -> None:
        """
        Initialize the trust store.

        Args:
            db_path: Path to SQLite database
            busy_timeout: Seconds to wait for the write lock
        """
        self._db_path = Path(db_path)
        self._timeout = busy_timeout

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection in manual transaction mode."""
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._timeout,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize_db(self) -> None:
        """Initialize the database schema."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._get_connection()
            try:
                conn.executescript(self._SCHEMA)
            finally:
                conn.close()
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"Could not initialize trust store: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[TrustSession]:
        """
        Run a unit of work under the database write lock.

        Commits when the block completes; rolls back on any exception.

        Raises:
            PersistenceError: On any sqlite failure (retryable)
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise PersistenceError(f"Trust store unavailable: {e}") from e

        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield TrustSession(conn)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        except TrustGateError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"Trust store operation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[TrustSession]:
        """
        Run read-only queries against a consistent snapshot.

        Raises:
            PersistenceError: On any sqlite failure (retryable)
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise PersistenceError(f"Trust store unavailable: {e}") from e

        try:
            conn.execute("BEGIN")
            try:
                yield TrustSession(conn)
            finally:
                conn.execute("ROLLBACK")
        except TrustGateError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"Trust store operation failed: {e}") from e
        finally:
            conn.close()

    # Convenience wrappers

    def add_user(
        self,
        user_id: str,
        username: str,
        role: Role = Role.USER,
        email: Optional[str] = None,
    ) -> UserTrustState:
        """Create an account with an empty device registry."""
        user = UserTrustState(user_id=user_id, username=username, role=role, email=email)
        with self.transaction() as session:
            session.insert_user(user)
        return user

    def get_user(self, user_id: str) -> UserTrustState:
        with self.read() as session:
            return session.load_user(user_id)

    def save_user(self, user: UserTrustState) -> None:
        """Persist an account's registry (used by administration and tests)."""
        with self.transaction() as session:
            session.save_registry(user)

    def set_user_active(self, user_id: str, is_active: bool) -> UserTrustState:
        """Activate or deactivate an account and return its new state."""
        with self.transaction() as session:
            session.set_user_active(user_id, is_active)
            return session.load_user(user_id)


__all__ = ["SQLiteTrustStore", "TrustSession"]
