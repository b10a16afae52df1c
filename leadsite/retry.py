"""Exponential backoff for establishing a database connection."""
from __future__ import annotations

import asyncio
import logging
import random
import ssl
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, TypeVar

from asyncpg.exceptions import (
    CannotConnectNowError,
    ConnectionDoesNotExistError,
    ConnectionFailureError,
    TooManyConnectionsError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from .errors import StoreConnectionError

logger = logging.getLogger("leadsite.retry")

T = TypeVar("T")

_CONNECTION_PHRASES = (
    "econnrefused",
    "connection refused",
    "could not connect",
    "connect call failed",
    "timeout",
    "timed out",
    "connection terminated",
    "connection was closed",
    "connection reset",
    "enotfound",
    "etimedout",
    "getaddrinfo",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "ssl",
    "certificate",
    "socket hang up",
)

_FATAL_PHRASES = (
    "password authentication failed",
    "authentication failed",
    "does not exist",
    "permission denied",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 10
    base_delay: float = 2.0
    factor: float = 1.5
    max_delay: float = 30.0
    jitter: float = 1.0

    def delay_for(self, attempt: int, *, rand: Callable[[], float] = random.random) -> float:
        """Seconds to wait after the failed ``attempt`` (1-based)."""

        exponential = self.base_delay * (self.factor ** (attempt - 1))
        return min(exponential + rand() * self.jitter, self.max_delay)


def _error_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.append(getattr(current, "orig", None))
        pending.append(current.__cause__)
        pending.append(current.__context__)


_CONNECTION_ERROR_TYPES = (
    OSError,
    TimeoutError,
    asyncio.TimeoutError,
    ssl.SSLError,
    PoolTimeoutError,
    CannotConnectNowError,
    ConnectionDoesNotExistError,
    ConnectionFailureError,
    TooManyConnectionsError,
)


def is_connection_error(exc: BaseException) -> bool:
    """Return ``True`` for transient connectivity faults worth retrying."""

    chain = list(_error_chain(exc))
    for error in chain:
        if any(phrase in str(error).lower() for phrase in _FATAL_PHRASES):
            return False

    for error in chain:
        if isinstance(error, _CONNECTION_ERROR_TYPES):
            return True
        message = str(error).lower()
        if any(phrase in message for phrase in _CONNECTION_PHRASES):
            return True
    return False


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    classify: Callable[[BaseException], bool] = is_connection_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` retrying connection-class failures with backoff.

    Non-connection failures propagate unchanged. Once the retries are used up a
    :class:`StoreConnectionError` is raised, chained to the last failure.
    """

    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_retries + 1):
        try:
            result = await operation()
        except Exception as exc:
            if not classify(exc):
                logger.error("%s failed with a non-retryable error: %s", description, str(exc)[:200])
                raise
            last_error = exc
            if attempt >= policy.max_retries:
                break
            delay = policy.delay_for(attempt)
            logger.info(
                "%s attempt %d/%d failed: %s; retrying in %.0fms",
                description,
                attempt,
                policy.max_retries,
                str(exc)[:150],
                delay * 1000,
            )
            await sleep(delay)
            continue
        if attempt > 1:
            logger.info("%s succeeded after %d attempt(s)", description, attempt)
        return result

    logger.error("%s failed after %d attempt(s): %s", description, policy.max_retries, str(last_error)[:200])
    raise StoreConnectionError("Database is unavailable. Please try again later.") from last_error


__all__ = ["RetryPolicy", "is_connection_error", "retry_async"]
