"""Domain models for lead registrations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class NewUser:
    """Payload accepted by :meth:`UserStore.create`."""

    first_name: str
    last_name: str
    email: str
    company: str
    phone: str
    message: str = ""


@dataclass(frozen=True)
class UserRecord:
    """A registration row as persisted by the record store."""

    id: int
    first_name: str
    last_name: str
    email: str
    company: str
    phone: str
    message: str
    email_sent: bool
    email_sent_at: Optional[datetime]
    email_message_id: Optional[str]
    admin_notification_sent: bool
    admin_notification_sent_at: Optional[datetime]
    admin_notification_message_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


__all__ = ["NewUser", "UserRecord", "normalize_email"]
