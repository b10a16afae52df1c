"""PostgreSQL record store built on SQLAlchemy's asyncio engine."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

import sqlalchemy
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import DatabaseSettings
from .errors import DuplicateEmailError
from .models import NewUser, UserRecord, normalize_email
from .retry import RetryPolicy, retry_async
from .store import UserStore, escape_like, filter_changes

logger = logging.getLogger("leadsite.postgres")

POOL_SIZE = 20
POOL_TIMEOUT = 10.0

_ORDERING = "ORDER BY created_at DESC, id DESC"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        first_name VARCHAR(255) NOT NULL,
        last_name VARCHAR(255) NOT NULL,
        email VARCHAR(255) UNIQUE NOT NULL,
        company VARCHAR(255) NOT NULL,
        phone VARCHAR(50) NOT NULL,
        message TEXT NOT NULL DEFAULT '',
        email_sent BOOLEAN NOT NULL DEFAULT FALSE,
        email_sent_at TIMESTAMPTZ,
        email_message_id VARCHAR(255),
        admin_notification_sent BOOLEAN NOT NULL DEFAULT FALSE,
        admin_notification_sent_at TIMESTAMPTZ,
        admin_notification_message_id VARCHAR(255),
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)",
    "CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at)",
)


def to_async_url(url: str) -> str:
    """Point a plain ``postgresql://`` URL at the asyncpg driver."""

    for prefix in ("postgresql+asyncpg://", "postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    raise ValueError("Database URL must use the postgresql:// scheme")


def policy_for(settings: DatabaseSettings) -> RetryPolicy:
    """Render-hosted databases take longer to accept connections after a deploy."""

    if settings.is_render:
        return RetryPolicy(max_retries=15, base_delay=3.0)
    return RetryPolicy()


class PostgresUserStore(UserStore):
    """Server-backed store sharing one bounded connection pool."""

    def __init__(
        self,
        url: str,
        *,
        require_ssl: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        super().__init__()
        self._url = to_async_url(url)
        self._require_ssl = require_ssl
        self._retry_policy = retry_policy or RetryPolicy()
        self._engine = engine
        self._closed = False

    @property
    def engine(self) -> AsyncEngine:
        if self._closed:
            raise RuntimeError("PostgresUserStore is closed")
        if self._engine is None:
            connect_args: Dict[str, Any] = {"timeout": POOL_TIMEOUT}
            if self._require_ssl:
                # Managed providers present certificates we do not pin.
                connect_args["ssl"] = "require"
            self._engine = create_async_engine(
                self._url,
                pool_size=POOL_SIZE,
                max_overflow=0,
                pool_timeout=POOL_TIMEOUT,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        return self._engine

    async def _setup(self) -> None:
        await retry_async(self._test_and_create_schema, self._retry_policy, description="Database initialization")
        logger.info("Database schema ready")

    async def _setup_once(self) -> None:
        await self._test_and_create_schema()
        logger.info("Database schema ready")

    async def _test_and_create_schema(self) -> None:
        async with self.engine.begin() as conn:
            result = await conn.execute(sqlalchemy.text("SELECT 1 AS test"))
            if result.scalar() != 1:
                raise RuntimeError("Database connection test failed: unexpected result")
            for statement in _SCHEMA:
                await conn.execute(sqlalchemy.text(statement))

    async def _release(self) -> None:
        self._closed = True
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------
    async def _fetch_all(self, query: str, params: Optional[Mapping[str, Any]] = None) -> List[UserRecord]:
        await self._ensure_ready()
        async with self.engine.connect() as conn:
            result = await conn.execute(sqlalchemy.text(query), dict(params or {}))
            rows = result.mappings().all()
        return [self._row_to_user(row) for row in rows]

    async def _fetch_one(self, query: str, params: Mapping[str, Any]) -> Optional[UserRecord]:
        rows = await self._fetch_all(query, params)
        return rows[0] if rows else None

    async def _write_returning(self, query: str, params: Mapping[str, Any]) -> Optional[UserRecord]:
        await self._ensure_ready()
        async with self.engine.begin() as conn:
            result = await conn.execute(sqlalchemy.text(query), dict(params))
            row = result.mappings().first()
        return self._row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def create(self, data: NewUser) -> UserRecord:
        email = normalize_email(data.email)
        try:
            created = await self._write_returning(
                """
                INSERT INTO users (first_name, last_name, email, company, phone, message)
                VALUES (:first_name, :last_name, :email, :company, :phone, :message)
                RETURNING *
                """,
                {
                    "first_name": data.first_name,
                    "last_name": data.last_name,
                    "email": email,
                    "company": data.company,
                    "phone": data.phone,
                    "message": data.message or "",
                },
            )
        except IntegrityError as exc:
            raise DuplicateEmailError(email) from exc
        if created is None:
            raise RuntimeError("Insert did not return the created user")
        return created

    async def update(self, user_id: int, changes: Mapping[str, Any]) -> Optional[UserRecord]:
        fields = filter_changes(changes)
        if not fields:
            return await self.get_by_id(user_id)

        params: Dict[str, Any] = {"id": user_id}
        assignments: List[str] = []
        for column, value in fields.items():
            if column == "email":
                value = normalize_email(str(value))
            assignments.append(f"{column} = :{column}")
            params[column] = value
        assignments.append("updated_at = CURRENT_TIMESTAMP")

        query = f"UPDATE users SET {', '.join(assignments)} WHERE id = :id RETURNING *"
        try:
            return await self._write_returning(query, params)
        except IntegrityError as exc:
            raise DuplicateEmailError(str(params.get("email", ""))) from exc

    async def mark_welcome_sent(self, user_id: int, message_id: str) -> Optional[UserRecord]:
        return await self._mark_sent("email", user_id, message_id)

    async def mark_admin_notified(self, user_id: int, message_id: str) -> Optional[UserRecord]:
        return await self._mark_sent("admin_notification", user_id, message_id)

    async def _mark_sent(self, prefix: str, user_id: int, message_id: str) -> Optional[UserRecord]:
        return await self._write_returning(
            f"""
            UPDATE users
               SET {prefix}_sent = TRUE,
                   {prefix}_sent_at = CURRENT_TIMESTAMP,
                   {prefix}_message_id = :message_id,
                   updated_at = CURRENT_TIMESTAMP
             WHERE id = :id
            RETURNING *
            """,
            {"id": user_id, "message_id": message_id},
        )

    async def delete(self, user_id: int) -> bool:
        await self._ensure_ready()
        async with self.engine.begin() as conn:
            result = await conn.execute(sqlalchemy.text("DELETE FROM users WHERE id = :id"), {"id": user_id})
        return (result.rowcount or 0) > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_by_id(self, user_id: int) -> Optional[UserRecord]:
        return await self._fetch_one("SELECT * FROM users WHERE id = :id", {"id": user_id})

    async def get_by_email(self, email: str) -> Optional[UserRecord]:
        return await self._fetch_one("SELECT * FROM users WHERE email = :email", {"email": normalize_email(email)})

    async def list_all(self, limit: Optional[int] = None, offset: Optional[int] = None) -> List[UserRecord]:
        query = f"SELECT * FROM users {_ORDERING}"
        params: Dict[str, int] = {}
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = limit
        if offset:
            query += " OFFSET :offset"
            params["offset"] = offset
        return await self._fetch_all(query, params)

    async def count(self) -> int:
        await self._ensure_ready()
        async with self.engine.connect() as conn:
            result = await conn.execute(sqlalchemy.text("SELECT COUNT(*) FROM users"))
            return int(result.scalar_one())

    async def search(self, term: str) -> List[UserRecord]:
        return await self._fetch_all(
            f"""
            SELECT * FROM users
             WHERE first_name ILIKE :pattern
                OR last_name ILIKE :pattern
                OR email ILIKE :pattern
                OR company ILIKE :pattern
             {_ORDERING}
            """,
            {"pattern": f"%{escape_like(term)}%"},
        )

    async def list_by_company(self, company: str) -> List[UserRecord]:
        return await self._fetch_all(f"SELECT * FROM users WHERE company = :company {_ORDERING}", {"company": company})

    async def list_recent(self, days: int = 30) -> List[UserRecord]:
        return await self._fetch_all(
            f"SELECT * FROM users WHERE created_at >= NOW() - make_interval(days => :days) {_ORDERING}",
            {"days": int(days)},
        )

    async def list_companies(self) -> List[Tuple[str, int]]:
        await self._ensure_ready()
        async with self.engine.connect() as conn:
            result = await conn.execute(
                sqlalchemy.text(
                    "SELECT company, COUNT(*) AS count FROM users GROUP BY company ORDER BY count DESC, company"
                )
            )
            rows = result.all()
        return [(str(company), int(count)) for company, count in rows]

    def _row_to_user(self, row: Mapping[str, Any]) -> UserRecord:
        return UserRecord(
            id=int(row["id"]),
            first_name=str(row["first_name"]),
            last_name=str(row["last_name"]),
            email=str(row["email"]),
            company=str(row["company"]),
            phone=str(row["phone"]),
            message=str(row["message"] or ""),
            email_sent=bool(row["email_sent"]),
            email_sent_at=row["email_sent_at"],
            email_message_id=row["email_message_id"],
            admin_notification_sent=bool(row["admin_notification_sent"]),
            admin_notification_sent_at=row["admin_notification_sent_at"],
            admin_notification_message_id=row["admin_notification_message_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


__all__ = ["PostgresUserStore", "policy_for", "to_async_url"]
