"""Backend-agnostic contract for the user record store."""
from __future__ import annotations

import abc
import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Tuple

from .config import DatabaseSettings
from .models import NewUser, UserRecord

logger = logging.getLogger("leadsite.store")

# Profile columns the generic update may touch. Notification columns are only
# written through mark_welcome_sent / mark_admin_notified.
UPDATABLE_FIELDS = ("first_name", "last_name", "email", "company", "phone", "message")


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def filter_changes(changes: Mapping[str, Any]) -> dict:
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported user fields: {', '.join(sorted(unknown))}")
    return {key: changes[key] for key in UPDATABLE_FIELDS if changes.get(key) is not None}


class UserStore(abc.ABC):
    """Persistence for registration records.

    Schema setup runs at most once at a time: concurrent callers of
    :meth:`initialize` await the same in-flight task. A failed attempt clears
    the task so the next caller starts over.

    :meth:`initialize` may retry with backoff (see :meth:`_setup`). Data
    operations only make a single setup attempt through :meth:`_setup_once`,
    and skip it entirely while a retrying initialization is running, so an
    outage surfaces from the query itself instead of stalling the request.
    """

    def __init__(self) -> None:
        self._initialized = False
        self._init_task: Optional[asyncio.Task] = None
        self._init_retrying = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _start_initialization(self, setup: Callable[[], Awaitable[None]], *, retrying: bool) -> asyncio.Task:
        self._init_retrying = retrying
        self._init_task = asyncio.ensure_future(self._run_initialization(setup))
        return self._init_task

    async def initialize(self) -> None:
        while not self._initialized:
            task = self._init_task
            if task is None:
                await asyncio.shield(self._start_initialization(self._setup, retrying=True))
                return
            if self._init_retrying:
                await asyncio.shield(task)
                return
            # A single-attempt readiness check is in flight. If it fails, the
            # loop starts a retrying initialization of our own.
            with suppress(Exception):
                await asyncio.shield(task)

    async def _run_initialization(self, setup: Callable[[], Awaitable[None]]) -> None:
        try:
            await setup()
            self._initialized = True
        finally:
            self._init_task = None

    async def _ensure_ready(self) -> None:
        if self._initialized:
            return
        task = self._init_task
        if task is not None and self._init_retrying:
            return
        try:
            if task is None:
                task = self._start_initialization(self._setup_once, retrying=False)
            await asyncio.shield(task)
        except Exception as exc:
            # The query that follows reports the real failure to the caller.
            logger.warning("Store initialization check failed: %s", str(exc)[:200])

    async def _cancel_initialization(self) -> None:
        task = self._init_task
        if task is None or task.done():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    @abc.abstractmethod
    async def _setup(self) -> None:
        """Create the ``users`` table and its indexes if they are missing."""

    async def _setup_once(self) -> None:
        """One setup attempt without backoff. Defaults to :meth:`_setup`."""

        await self._setup()

    @abc.abstractmethod
    async def create(self, data: NewUser) -> UserRecord: ...

    @abc.abstractmethod
    async def get_by_id(self, user_id: int) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    async def get_by_email(self, email: str) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    async def list_all(self, limit: Optional[int] = None, offset: Optional[int] = None) -> List[UserRecord]: ...

    @abc.abstractmethod
    async def update(self, user_id: int, changes: Mapping[str, Any]) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    async def mark_welcome_sent(self, user_id: int, message_id: str) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    async def mark_admin_notified(self, user_id: int, message_id: str) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    async def delete(self, user_id: int) -> bool: ...

    @abc.abstractmethod
    async def count(self) -> int: ...

    @abc.abstractmethod
    async def search(self, term: str) -> List[UserRecord]: ...

    @abc.abstractmethod
    async def list_by_company(self, company: str) -> List[UserRecord]: ...

    @abc.abstractmethod
    async def list_recent(self, days: int = 30) -> List[UserRecord]: ...

    @abc.abstractmethod
    async def list_companies(self) -> List[Tuple[str, int]]: ...

    async def close(self) -> None:
        """Stop any in-flight initialization and release pooled connections."""

        await self._cancel_initialization()
        await self._release()

    async def _release(self) -> None:
        """Backends without pools have nothing to release."""


def create_store(settings: DatabaseSettings) -> UserStore:
    """Build the backend selected by ``settings.backend``."""

    if settings.backend == "sqlite":
        from .database import SQLiteUserStore

        return SQLiteUserStore(settings.sqlite_path)

    from .postgres import PostgresUserStore, policy_for

    return PostgresUserStore(
        settings.url,
        require_ssl=settings.requires_ssl,
        retry_policy=policy_for(settings),
    )


__all__ = ["UPDATABLE_FIELDS", "UserStore", "create_store", "escape_like", "filter_changes"]
