"""SQLite credential store for upstream accounts.

One table, ``upstream_accounts``, holds every configured upstream
credential set.  The refresh core only ever touches four things on a
row: ``status``, ``credentials``, ``health_status`` and the
``last_refresh_check`` / ``updated_at`` timestamps.

WAL mode for concurrent reads, single writer lock for atomic writes.
Every write is a single-row UPDATE, so a refresh either lands the full
new token set or nothing at all.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import BaseModel

from warden.web.oauth import OAUTH_TYPE, OAuthCredentials


class PersistenceError(RuntimeError):
    """A credential store write did not land."""


class AccountKind(str, Enum):
    ANTHROPIC_OAUTH = "ANTHROPIC_OAUTH"
    CLAUDE_CODE = "CLAUDE_CODE"
    ANTHROPIC_API = "ANTHROPIC_API"
    GEMINI_CLI = "GEMINI_CLI"
    OPENAI_API = "OPENAI_API"


class AccountStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"
    INACTIVE = "INACTIVE"


# ---------------------------------------------------------------------------
# Pydantic v2 Models
# ---------------------------------------------------------------------------


class HealthStatus(BaseModel):
    """Last-known diagnostic record for an account."""

    state: str  # "ok" | "error"
    message: Optional[str] = None
    timestamp: str


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS upstream_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    credentials TEXT NOT NULL,
    health_status TEXT,
    last_refresh_check TEXT,
    last_used_at TEXT,
    is_deleted BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_upstream_kind_status ON upstream_accounts(kind, status, is_deleted);
"""


def _default_db_path() -> str:
    """Return default database path: ~/.warden/warden.db"""
    return str(Path.home() / ".warden" / "warden.db")


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_dict(row: sqlite3.Row) -> dict:
    """Decode JSON columns so callers get plain Python values."""
    data = dict(row)
    for col in ("credentials", "health_status"):
        raw = data.get(col)
        if isinstance(raw, str):
            try:
                data[col] = json.loads(raw)
            except json.JSONDecodeError:
                pass  # left as text; parse_credentials() reports it
    data["is_deleted"] = bool(data.get("is_deleted", False))
    return data


class Database:
    """SQLite credential store with WAL mode and thread-safe writes.

    >>> db = Database(":memory:")
    >>> db.db_path
    ':memory:'
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = _default_db_path()

        self.db_path = db_path
        self._write_lock = threading.Lock()
        self._local = threading.local()

        # Create parent dir + file if needed (skip for :memory:)
        if db_path != ":memory:" and not Path(db_path).exists():
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            Path(db_path).touch()

        self._init_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        yield self._get_connection()

    def _init_schema(self) -> None:
        with self._writer() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.executescript(INDEXES_SQL)

    def close(self) -> None:
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None

    # ==================================================================
    # Account bootstrap / admin helpers
    # ==================================================================

    def create_account(
        self,
        name: str,
        kind: str,
        credentials: dict,
        status: str = AccountStatus.ACTIVE.value,
    ) -> dict:
        """Insert an upstream account row and return it.

        >>> db = Database(":memory:")
        >>> acct = db.create_account("primary", "ANTHROPIC_API", {"type": "ANTHROPIC_API", "apiKey": "k"})
        >>> acct["status"]
        'ACTIVE'
        """
        kind = AccountKind(kind).value
        status = AccountStatus(status).value
        now = _utcnow()
        with self._writer() as conn:
            cursor = conn.execute(
                """INSERT INTO upstream_accounts
                   (name, kind, status, credentials, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (name, kind, status, json.dumps(credentials), now, now),
            )
            row = conn.execute(
                "SELECT * FROM upstream_accounts WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return _row_to_dict(row)

    def get_account(self, account_id: int) -> Optional[dict]:
        """Get an account by ID (excludes soft-deleted).

        >>> db = Database(":memory:")
        >>> db.get_account(999) is None
        True
        """
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM upstream_accounts WHERE id = ? AND is_deleted = 0",
                (account_id,),
            ).fetchone()
            return _row_to_dict(row) if row else None

    def list_accounts(
        self,
        kind: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[dict]:
        """List non-deleted accounts, optionally filtered by kind and status.

        >>> db = Database(":memory:")
        >>> db.list_accounts()
        []
        """
        conditions = ["is_deleted = 0"]
        params: list[Any] = []
        if kind is not None:
            conditions.append("kind = ?")
            params.append(AccountKind(kind).value)
        if status is not None:
            conditions.append("status = ?")
            params.append(AccountStatus(status).value)

        with self._reader() as conn:
            cursor = conn.execute(
                f"SELECT * FROM upstream_accounts WHERE {' AND '.join(conditions)} "
                "ORDER BY id ASC",
                params,
            )
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def delete_account(self, account_id: int) -> bool:
        """Soft-delete an account."""
        with self._writer() as conn:
            cursor = conn.execute(
                "UPDATE upstream_accounts SET is_deleted = 1, updated_at = ? "
                "WHERE id = ? AND is_deleted = 0",
                (_utcnow(), account_id),
            )
            return cursor.rowcount > 0

    def reactivate_account(self, account_id: int) -> bool:
        """Move a FAILED account back to ACTIVE so audit passes pick it up.

        >>> db = Database(":memory:")
        >>> db.reactivate_account(1)
        False
        """
        with self._writer() as conn:
            cursor = conn.execute(
                """UPDATE upstream_accounts SET status = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND is_deleted = 0""",
                (
                    AccountStatus.ACTIVE.value,
                    _utcnow(),
                    account_id,
                    AccountStatus.FAILED.value,
                ),
            )
            return cursor.rowcount > 0

    # ==================================================================
    # Refresh core contract
    # ==================================================================

    def list_eligible_accounts(self) -> list[dict]:
        """ACTIVE OAuth accounts, as ``{"id", "credentials"}`` pairs.

        >>> db = Database(":memory:")
        >>> db.list_eligible_accounts()
        []
        """
        rows = self.list_accounts(kind=OAUTH_TYPE, status=AccountStatus.ACTIVE.value)
        return [{"id": row["id"], "credentials": row["credentials"]} for row in rows]

    def persist_refresh(self, account_id: int, credentials: OAuthCredentials) -> None:
        """Write a freshly refreshed token set in one statement.

        Also marks the account ACTIVE with an ok health record, which is
        how a manual refresh re-admits a FAILED account.

        Raises PersistenceError if the row could not be updated.
        """
        now = _utcnow()
        health = HealthStatus(state="ok", message="Token refreshed", timestamp=now)
        try:
            with self._writer() as conn:
                cursor = conn.execute(
                    """UPDATE upstream_accounts SET
                        credentials = ?, status = ?, health_status = ?,
                        last_refresh_check = ?, last_used_at = ?, updated_at = ?
                       WHERE id = ? AND is_deleted = 0""",
                    (
                        credentials.model_dump_json(by_alias=True),
                        AccountStatus.ACTIVE.value,
                        health.model_dump_json(),
                        now,
                        now,
                        now,
                        account_id,
                    ),
                )
                updated = cursor.rowcount
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Could not persist refreshed credentials for account {account_id}: {exc}"
            ) from exc
        if updated == 0:
            raise PersistenceError(f"Account {account_id} no longer exists")

    def mark_failed(self, account_id: int, reason: str) -> None:
        """Set status FAILED and record the error in health_status.

        Raises PersistenceError if the write fails.
        """
        now = _utcnow()
        health = HealthStatus(state="error", message=reason, timestamp=now)
        try:
            with self._writer() as conn:
                conn.execute(
                    """UPDATE upstream_accounts SET
                        status = ?, health_status = ?,
                        last_refresh_check = ?, updated_at = ?
                       WHERE id = ? AND is_deleted = 0""",
                    (
                        AccountStatus.FAILED.value,
                        health.model_dump_json(),
                        now,
                        now,
                        account_id,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Could not mark account {account_id} as failed: {exc}"
            ) from exc

    def restore_credentials(self, account_id: int, credentials: dict) -> bool:
        """Overwrite credentials from a recovery file; keeps status as-is."""
        now = _utcnow()
        with self._writer() as conn:
            cursor = conn.execute(
                """UPDATE upstream_accounts SET credentials = ?, updated_at = ?
                   WHERE id = ? AND is_deleted = 0""",
                (json.dumps(credentials), now, account_id),
            )
            return cursor.rowcount > 0
