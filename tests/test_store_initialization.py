from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from leadsite.database import SQLiteUserStore

pytestmark = pytest.mark.anyio


class CountingStore(SQLiteUserStore):
    """SQLite store whose schema setup can be made to fail or stall."""

    def __init__(self, path: Path, *, failures: int = 0) -> None:
        super().__init__(path)
        self.setup_calls = 0
        self.failures = failures
        self.release = asyncio.Event()
        self.release.set()

    async def _setup(self) -> None:
        self.setup_calls += 1
        await self.release.wait()
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        await super()._setup()


async def test_concurrent_initialize_shares_one_attempt(tmp_path: Path) -> None:
    store = CountingStore(tmp_path / "leads.sqlite3")
    store.release.clear()

    waiters = [asyncio.ensure_future(store.initialize()) for _ in range(3)]
    await asyncio.sleep(0)
    store.release.set()
    await asyncio.gather(*waiters)

    assert store.setup_calls == 1
    assert store.initialized

    await store.initialize()
    assert store.setup_calls == 1


async def test_failed_initialize_is_retried_by_next_call(tmp_path: Path) -> None:
    store = CountingStore(tmp_path / "leads.sqlite3", failures=1)

    with pytest.raises(ConnectionRefusedError):
        await store.initialize()
    assert not store.initialized

    await store.initialize()
    assert store.initialized
    assert store.setup_calls == 2


async def test_operations_surface_their_own_error_after_failed_setup(tmp_path: Path) -> None:
    store = CountingStore(tmp_path / "leads.sqlite3", failures=1)

    # The readiness check swallows the setup failure; the table is missing so
    # the query itself fails.
    with pytest.raises(Exception, match="no such table"):
        await store.count()

    assert await store.count() == 0
