"""SQLite-backed persistence for lead registrations."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Tuple, TypeVar

import anyio

from .errors import DuplicateEmailError
from .models import NewUser, UserRecord, normalize_email
from .store import UserStore, escape_like, filter_changes

T = TypeVar("T")

_ORDERING = "ORDER BY created_at DESC, id DESC"


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SQLiteUserStore(UserStore):
    """Embedded single-file store.

    Every public call runs its blocking ``sqlite3`` work on a worker thread so
    the event loop stays free while the file is locked.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        await self._ensure_ready()
        return await anyio.to_thread.run_sync(partial(func, *args))

    async def _setup(self) -> None:
        await anyio.to_thread.run_sync(self._create_schema)

    def _create_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    email TEXT UNIQUE NOT NULL,
                    company TEXT NOT NULL,
                    phone TEXT NOT NULL,
                    message TEXT NOT NULL DEFAULT '',
                    email_sent INTEGER NOT NULL DEFAULT 0,
                    email_sent_at TEXT,
                    email_message_id TEXT,
                    admin_notification_sent INTEGER NOT NULL DEFAULT 0,
                    admin_notification_sent_at TEXT,
                    admin_notification_message_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
                CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at);
                """
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def create(self, data: NewUser) -> UserRecord:
        return await self._run(self._create, data)

    def _create(self, data: NewUser) -> UserRecord:
        now = _serialize_datetime(_current_timestamp())
        email = normalize_email(data.email)
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (
                        first_name, last_name, email, company, phone, message, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data.first_name,
                        data.last_name,
                        email,
                        data.company,
                        data.phone,
                        data.message or "",
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateEmailError(email) from exc
            user_id = cursor.lastrowid

        created = self._get_by_id(user_id)
        if created is None:
            raise RuntimeError("Failed to load user after creation")
        return created

    async def update(self, user_id: int, changes: Mapping[str, Any]) -> Optional[UserRecord]:
        return await self._run(self._update, user_id, filter_changes(changes))

    def _update(self, user_id: int, fields: Mapping[str, Any]) -> Optional[UserRecord]:
        if not fields:
            return self._get_by_id(user_id)

        updates: List[str] = []
        values: List[object] = []
        for column, value in fields.items():
            if column == "email":
                value = normalize_email(str(value))
            updates.append(f"{column} = ?")
            values.append(value)

        updates.append("updated_at = ?")
        values.append(_serialize_datetime(_current_timestamp()))
        values.append(user_id)
        query = f"UPDATE users SET {', '.join(updates)} WHERE id = ?"

        with self._connect() as conn:
            try:
                cursor = conn.execute(query, values)
            except sqlite3.IntegrityError as exc:
                raise DuplicateEmailError(str(fields.get("email", ""))) from exc
            if cursor.rowcount == 0:
                return None

        return self._get_by_id(user_id)

    async def mark_welcome_sent(self, user_id: int, message_id: str) -> Optional[UserRecord]:
        return await self._run(self._mark_sent, "email", user_id, message_id)

    async def mark_admin_notified(self, user_id: int, message_id: str) -> Optional[UserRecord]:
        return await self._run(self._mark_sent, "admin_notification", user_id, message_id)

    def _mark_sent(self, prefix: str, user_id: int, message_id: str) -> Optional[UserRecord]:
        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE users
                   SET {prefix}_sent = 1, {prefix}_sent_at = ?, {prefix}_message_id = ?, updated_at = ?
                 WHERE id = ?
                """,
                (now, message_id, now, user_id),
            )
            if cursor.rowcount == 0:
                return None
        return self._get_by_id(user_id)

    async def delete(self, user_id: int) -> bool:
        return await self._run(self._delete, user_id)

    def _delete(self, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_by_id(self, user_id: int) -> Optional[UserRecord]:
        return await self._run(self._get_by_id, user_id)

    def _get_by_id(self, user_id: int) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    async def get_by_email(self, email: str) -> Optional[UserRecord]:
        return await self._run(self._fetch_one, "SELECT * FROM users WHERE email = ?", (normalize_email(email),))

    async def list_all(self, limit: Optional[int] = None, offset: Optional[int] = None) -> List[UserRecord]:
        query = f"SELECT * FROM users {_ORDERING}"
        params: List[int] = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        if offset:
            # SQLite only accepts OFFSET after a LIMIT clause.
            if limit is None:
                query += " LIMIT -1"
            query += " OFFSET ?"
            params.append(offset)
        return await self._run(self._fetch_all, query, tuple(params))

    async def count(self) -> int:
        return await self._run(self._count)

    def _count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM users").fetchone()
        return int(row["count"])

    async def search(self, term: str) -> List[UserRecord]:
        pattern = f"%{escape_like(term)}%"
        query = f"""
            SELECT * FROM users
             WHERE first_name LIKE ? ESCAPE '\\'
                OR last_name LIKE ? ESCAPE '\\'
                OR email LIKE ? ESCAPE '\\'
                OR company LIKE ? ESCAPE '\\'
             {_ORDERING}
        """
        return await self._run(self._fetch_all, query, (pattern, pattern, pattern, pattern))

    async def list_by_company(self, company: str) -> List[UserRecord]:
        return await self._run(self._fetch_all, f"SELECT * FROM users WHERE company = ? {_ORDERING}", (company,))

    async def list_recent(self, days: int = 30) -> List[UserRecord]:
        cutoff = _serialize_datetime(_current_timestamp() - timedelta(days=days))
        return await self._run(self._fetch_all, f"SELECT * FROM users WHERE created_at >= ? {_ORDERING}", (cutoff,))

    async def list_companies(self) -> List[Tuple[str, int]]:
        return await self._run(self._list_companies)

    def _list_companies(self) -> List[Tuple[str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT company, COUNT(*) AS count FROM users GROUP BY company ORDER BY count DESC, company"
            ).fetchall()
        return [(str(row["company"]), int(row["count"])) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _fetch_one(self, query: str, params: Tuple[Any, ...]) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def _fetch_all(self, query: str, params: Tuple[Any, ...]) -> List[UserRecord]:
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_user(row) for row in rows]

    def _row_to_user(self, row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=int(row["id"]),
            first_name=str(row["first_name"]),
            last_name=str(row["last_name"]),
            email=str(row["email"]),
            company=str(row["company"]),
            phone=str(row["phone"]),
            message=str(row["message"] or ""),
            email_sent=bool(row["email_sent"]),
            email_sent_at=_parse_datetime(row["email_sent_at"]),
            email_message_id=row["email_message_id"],
            admin_notification_sent=bool(row["admin_notification_sent"]),
            admin_notification_sent_at=_parse_datetime(row["admin_notification_sent_at"]),
            admin_notification_message_id=row["admin_notification_message_id"],
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )


__all__ = ["SQLiteUserStore"]
