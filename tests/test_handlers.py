from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeTransport
from leadsite.config import EmailSettings
from leadsite.database import SQLiteUserStore
from leadsite.errors import DuplicateError, EmailDeliveryError, EmailServiceError, ValidationError
from leadsite.handlers import (
    SMTP_GENERIC,
    SMTP_MAILBOX_MISSING,
    SMTP_NETWORK,
    SMTP_RECIPIENT_INVALID,
    SMTP_TEMPORARY,
    AdminHandler,
    RegistrationHandler,
    describe_delivery_failure,
)
from leadsite.mailer import EmailService

pytestmark = pytest.mark.anyio

SETTINGS = EmailSettings(user="mailer@example.com", password="app-password", admin_email="admin@example.com")


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (EmailDeliveryError("550 5.1.1 The email account does not exist", code=550), SMTP_MAILBOX_MISSING),
        (EmailDeliveryError("553 mailbox name not allowed", code=553), SMTP_RECIPIENT_INVALID),
        (EmailDeliveryError("Recipient address invalid"), SMTP_RECIPIENT_INVALID),
        (EmailDeliveryError("421 service not available", code=421), SMTP_TEMPORARY),
        (EmailDeliveryError("Mailbox temporarily locked"), SMTP_TEMPORARY),
        (EmailDeliveryError("Connection to smtp.example.com:587 failed", connection_failed=True), SMTP_NETWORK),
        (EmailDeliveryError("Server disconnected", connection_failed=True), SMTP_NETWORK),
        (EmailServiceError("message too large"), SMTP_GENERIC),
        (EmailDeliveryError("550 mailbox unavailable"), SMTP_RECIPIENT_INVALID),
        (EmailDeliveryError("451-4.3.0 try again later"), SMTP_TEMPORARY),
        (EmailServiceError("Queued as 4550ABC; message too large"), SMTP_GENERIC),
        (EmailDeliveryError("Connection to mx550.example.com:25 failed", connection_failed=True), SMTP_NETWORK),
    ],
)
def test_describe_delivery_failure(error: EmailServiceError, expected: str) -> None:
    assert describe_delivery_failure(error) == expected


class ExplodingEmailService(EmailService):
    async def send_welcome_email(self, data):
        raise RuntimeError("template exploded")


@pytest.fixture()
def store(tmp_path: Path) -> SQLiteUserStore:
    return SQLiteUserStore(tmp_path / "leads.sqlite3")


def _registration(**overrides):
    fields = {
        "first_name": " John ",
        "last_name": "Doe",
        "email": "John@Example.com",
        "company": "Acme",
        "phone": "555-0100",
        "message": None,
    }
    fields.update(overrides)
    return fields


async def test_register_trims_input_and_records_notifications(store: SQLiteUserStore) -> None:
    transport = FakeTransport()
    handler = RegistrationHandler(store, EmailService(SETTINGS, transport=transport))

    user = await handler.register(**_registration())

    assert user.first_name == "John"
    assert user.email == "john@example.com"
    assert user.message == ""
    assert len(transport.sent) == 2

    stored = await store.get_by_id(user.id)
    assert stored.email_sent and stored.admin_notification_sent
    assert stored.email_message_id == transport.sent[0]["Message-ID"]
    assert stored.admin_notification_message_id == transport.sent[1]["Message-ID"]


@pytest.mark.parametrize("missing", ["first_name", "last_name", "email", "company", "phone"])
async def test_register_requires_every_profile_field(store: SQLiteUserStore, missing: str) -> None:
    handler = RegistrationHandler(store, EmailService(SETTINGS, transport=FakeTransport()))

    with pytest.raises(ValidationError, match="All required fields must be provided"):
        await handler.register(**_registration(**{missing: "   "}))
    assert await store.count() == 0


async def test_register_rejects_duplicates_without_sending_mail(store: SQLiteUserStore) -> None:
    transport = FakeTransport()
    handler = RegistrationHandler(store, EmailService(SETTINGS, transport=transport))
    await handler.register(**_registration())

    with pytest.raises(DuplicateError):
        await handler.register(**_registration(email="JOHN@EXAMPLE.COM"))

    assert len(transport.sent) == 2
    assert await store.count() == 1


class RacingStore(SQLiteUserStore):
    """Misses every lookup, as when a concurrent request inserts first."""

    async def get_by_email(self, email):
        return None


async def test_register_maps_a_concurrent_insert_to_a_duplicate(tmp_path: Path) -> None:
    store = RacingStore(tmp_path / "leads.sqlite3")
    transport = FakeTransport()
    handler = RegistrationHandler(store, EmailService(SETTINGS, transport=transport))
    await handler.register(**_registration())

    with pytest.raises(DuplicateError, match="An account with this email already exists"):
        await handler.register(**_registration(email="john@example.com"))

    assert len(transport.sent) == 2
    assert await store.count() == 1


async def test_notification_crash_does_not_fail_registration(store: SQLiteUserStore) -> None:
    transport = FakeTransport()
    handler = RegistrationHandler(store, ExplodingEmailService(SETTINGS, transport=transport))

    user = await handler.register(**_registration())

    stored = await store.get_by_id(user.id)
    assert not stored.email_sent
    assert stored.admin_notification_sent
    assert len(transport.sent) == 1


async def test_admin_stats_and_search(store: SQLiteUserStore) -> None:
    handler = RegistrationHandler(store, EmailService(SETTINGS, transport=FakeTransport()))
    await handler.register(**_registration())
    await handler.register(**_registration(email="jane@example.com", first_name="Jane", company="Globex"))
    admin = AdminHandler(store)

    stats = await admin.stats()
    assert stats == {
        "totalUsers": 2,
        "recentUsers": 2,
        "stats": {"total": 2, "last30Days": 2, "averagePerDay": 0.07},
    }
    assert [user.first_name for user in await admin.search(" jane ")] == ["Jane"]
    assert await admin.companies() == [{"name": "Acme", "count": 1}, {"name": "Globex", "count": 1}]

    with pytest.raises(ValidationError, match="Search term is required"):
        await admin.search("  ")
