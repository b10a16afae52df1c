from __future__ import annotations

from email.message import EmailMessage
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence, Tuple

import dns.name
import dns.resolver
import pytest


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


class FakeTransport:
    """In-memory SMTP transport recording every message it accepts."""

    host = "smtp.test"
    port = 2525

    def __init__(self, *, send_error: Optional[Exception] = None, verify_error: Optional[Exception] = None) -> None:
        self.send_error = send_error
        self.verify_error = verify_error
        self.sent: List[EmailMessage] = []
        self.verified = 0

    async def send(self, message: EmailMessage) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)
        return "250 Message accepted"

    async def verify(self) -> None:
        self.verified += 1
        if self.verify_error is not None:
            raise self.verify_error


def mx_record(preference: int, exchange: str) -> SimpleNamespace:
    return SimpleNamespace(preference=preference, exchange=dns.name.from_text(exchange))


class FakeResolver:
    """Answers DNS queries from a fixed table; anything else has no answer."""

    def __init__(self, records: Optional[Dict[Tuple[str, str], Sequence[object]]] = None) -> None:
        self.records = dict(records or {})
        self.calls: List[Tuple[str, str]] = []

    async def resolve(self, domain: str, record_type: str) -> Sequence[object]:
        self.calls.append((domain, record_type))
        answer = self.records.get((domain, record_type))
        if not answer:
            raise dns.resolver.NoAnswer()
        return answer
