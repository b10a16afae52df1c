from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import FakeResolver, FakeTransport, mx_record
from leadsite.api import create_app
from leadsite.config import EmailSettings
from leadsite.database import SQLiteUserStore
from leadsite.errors import EmailDeliveryError
from leadsite.handlers import SMTP_MAILBOX_MISSING
from leadsite.mailer import EmailService
from leadsite.validation import EmailValidator

SETTINGS = EmailSettings(
    host="smtp.example.com",
    user="mailer@example.com",
    password="app-password",
    admin_email="admin@softdev-solutions.com",
)

REGISTRATION = {
    "firstName": "John",
    "lastName": "Doe",
    "email": "John@Ex.com",
    "company": "Acme",
    "phone": "+65 5550 0100",
}


class Harness:
    def __init__(self, tmp_path: Path, *, dns_records=None) -> None:
        self.db_path = tmp_path / "leads.sqlite3"
        self.env_dir = tmp_path
        self.store = SQLiteUserStore(self.db_path)
        self.transport = FakeTransport()
        if dns_records is None:
            dns_records = {("softdev-solutions.com", "MX"): [mx_record(1, "mx.softdev-solutions.com.")]}
        self.resolver = FakeResolver(dns_records)
        self.email_service = EmailService(SETTINGS, transport=self.transport)

    def app(self, **overrides):
        options = {
            "store": self.store,
            "email_service": self.email_service,
            "validator": EmailValidator(self.resolver),
            "env_dir": self.env_dir,
        }
        options.update(overrides)
        return create_app(**options)

    def row(self, user_id: int) -> sqlite3.Row:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            return conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


@pytest.fixture()
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


@pytest.fixture()
def client(harness: Harness) -> Iterator[TestClient]:
    with TestClient(harness.app()) as test_client:
        yield test_client


# ----------------------------------------------------------------------
# Registration
# ----------------------------------------------------------------------
def test_register_then_duplicate_in_other_case(client: TestClient, harness: Harness) -> None:
    response = client.post("/register", json=REGISTRATION)

    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["success"] is True
    assert payload["message"] == "Registration successful! We will contact you within 24 hours."
    user = payload["user"]
    assert set(user) == {"id", "firstName", "lastName", "email", "company", "createdAt"}
    assert user["email"] == "john@ex.com"

    row = harness.row(user["id"])
    assert row["email_sent"] == 1
    assert row["admin_notification_sent"] == 1
    assert [message["To"] for message in harness.transport.sent] == ["john@ex.com", "admin@softdev-solutions.com"]

    duplicate = client.post("/register", json={**REGISTRATION, "email": "JOHN@EX.COM"})
    assert duplicate.status_code == 409
    assert duplicate.json() == {"error": "An account with this email already exists"}
    assert len(harness.transport.sent) == 2


class RacingStore(SQLiteUserStore):
    async def get_by_email(self, email):
        return None


def test_register_reports_a_concurrent_duplicate_as_conflict(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.store = RacingStore(harness.db_path)

    with TestClient(harness.app()) as client:
        assert client.post("/register", json=REGISTRATION).status_code == 200
        duplicate = client.post("/register", json=REGISTRATION)

    assert duplicate.status_code == 409
    assert duplicate.json() == {"error": "An account with this email already exists"}
    with sqlite3.connect(harness.db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 1


def test_register_succeeds_when_email_delivery_fails(client: TestClient, harness: Harness) -> None:
    harness.transport.send_error = EmailDeliveryError("421 service not available", code=421)

    response = client.post("/register", json=REGISTRATION)

    assert response.status_code == 200
    row = harness.row(response.json()["user"]["id"])
    assert row["email_sent"] == 0
    assert row["admin_notification_sent"] == 0


@pytest.mark.parametrize(
    ("body", "error"),
    [
        ({**REGISTRATION, "phone": ""}, "All required fields must be provided"),
        ({key: value for key, value in REGISTRATION.items() if key != "company"}, "All required fields must be provided"),
        ({**REGISTRATION, "email": "not-an-email"}, "Please provide a valid email address"),
        ({**REGISTRATION, "firstName": 42}, "Invalid request body"),
    ],
)
def test_register_rejects_bad_input(client: TestClient, harness: Harness, body: dict, error: str) -> None:
    response = client.post("/register", json=body)

    assert response.status_code == 400
    assert response.json() == {"error": error}
    assert harness.transport.sent == []


def test_register_rejects_malformed_json(client: TestClient) -> None:
    response = client.post("/register", content="{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid request body"}


def test_list_search_and_filter_registrations(client: TestClient) -> None:
    for index, company in enumerate(["Acme", "Globex", "Acme"]):
        body = {**REGISTRATION, "email": f"user{index}@example.com", "company": company}
        assert client.post("/register", json=body).status_code == 200

    listing = client.get("/register").json()
    assert listing["total"] == 3
    assert listing["returned"] == 3
    assert [user["email"] for user in listing["users"]] == [
        "user2@example.com",
        "user1@example.com",
        "user0@example.com",
    ]
    assert {"phone", "message", "updatedAt"} <= set(listing["users"][0])

    paged = client.get("/register", params={"limit": 1, "offset": 1}).json()
    assert [user["email"] for user in paged["users"]] == ["user1@example.com"]
    assert paged["total"] == 3

    unlimited = client.get("/register", params={"limit": 0}).json()
    assert unlimited["returned"] == 3

    by_company = client.get("/register", params={"company": "Acme"}).json()
    assert by_company["returned"] == 2

    searched = client.get("/register", params={"search": "GLOBEX", "company": "Acme"}).json()
    assert [user["email"] for user in searched["users"]] == ["user1@example.com"]


def test_delete_registration(client: TestClient) -> None:
    user_id = client.post("/register", json=REGISTRATION).json()["user"]["id"]

    deleted = client.delete("/register", params={"id": user_id})
    assert deleted.status_code == 200
    assert deleted.json() == {"success": True, "userId": user_id}

    again = client.delete("/register", params={"id": user_id})
    assert again.status_code == 404
    assert again.json() == {"error": "User not found"}

    missing = client.delete("/register")
    assert missing.status_code == 400


# ----------------------------------------------------------------------
# Contact form
# ----------------------------------------------------------------------
CONTACT = {
    "name": "Jo Bloggs",
    "email": "jo@example.com",
    "company": "Initech",
    "service": "cloud",
    "message": "Please call me back.",
}


def test_contact_form_is_delivered(client: TestClient, harness: Harness) -> None:
    response = client.post("/contact", json=CONTACT)

    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["success"] is True
    assert payload["messageId"] == harness.transport.sent[0]["Message-ID"]
    assert harness.transport.sent[0]["Reply-To"] == "jo@example.com"
    assert harness.resolver.calls == [("softdev-solutions.com", "MX")]


def test_contact_form_requires_core_fields(client: TestClient) -> None:
    response = client.post("/contact", json={"name": "Jo", "email": "jo@example.com"})

    assert response.status_code == 400
    assert response.json() == {"error": "Name, email, and message are required"}


def test_contact_form_rejects_undeliverable_admin_domain(tmp_path: Path) -> None:
    harness = Harness(tmp_path, dns_records={})

    with TestClient(harness.app()) as client:
        response = client.post("/contact", json=CONTACT)

    assert response.status_code == 400
    payload = response.json()
    assert "Domain does not have valid MX or A records" in payload["error"]
    assert payload["details"] == {"domain": "softdev-solutions.com", "hasRecords": False}
    assert harness.transport.sent == []


def test_contact_form_reports_unavailable_mail_service(client: TestClient, harness: Harness) -> None:
    harness.transport.verify_error = EmailDeliveryError("Connection refused", connection_failed=True)

    response = client.post("/contact", json=CONTACT)

    assert response.status_code == 503
    assert response.json() == {"error": "Email service is not available. Please try again later."}


def test_contact_form_maps_smtp_rejections(client: TestClient, harness: Harness) -> None:
    harness.transport.send_error = EmailDeliveryError("550 5.1.1 user unknown", code=550)

    response = client.post("/contact", json=CONTACT)

    assert response.status_code == 500
    assert response.json() == {"error": SMTP_MAILBOX_MISSING}


# ----------------------------------------------------------------------
# Health and administration
# ----------------------------------------------------------------------
def test_database_health(client: TestClient) -> None:
    client.post("/register", json=REGISTRATION)

    payload = client.get("/health/db").json()

    assert payload["status"] == "healthy"
    assert payload["message"] == "Database connection successful"
    assert payload["userCount"] == 1
    assert payload["timestamp"]


def test_admin_actions(client: TestClient) -> None:
    client.post("/register", json=REGISTRATION)
    client.post("/register", json={**REGISTRATION, "email": "ann@globex.com", "firstName": "Ann", "company": "Globex"})

    stats = client.post("/admin/database", json={"action": "stats"}).json()
    assert stats["totalUsers"] == 2
    assert stats["stats"]["last30Days"] == 2

    recent = client.post("/admin/database", json={"action": "recent", "days": 7}).json()
    assert recent["count"] == 2
    assert recent["days"] == 7

    search = client.post("/admin/database", json={"action": "search", "searchTerm": "ann"}).json()
    assert [user["email"] for user in search["users"]] == ["ann@globex.com"]

    companies = client.post("/admin/database", json={"action": "companies"}).json()
    assert companies["totalCompanies"] == 2

    missing_term = client.post("/admin/database", json={"action": "search"})
    assert missing_term.status_code == 400
    assert missing_term.json() == {"error": "Search term is required"}

    invalid = client.post("/admin/database", json={"action": "drop"})
    assert invalid.status_code == 400
    assert invalid.json() == {"error": "Invalid action"}


# ----------------------------------------------------------------------
# Email diagnostics
# ----------------------------------------------------------------------
def test_email_status(client: TestClient) -> None:
    payload = client.get("/email/test").json()

    assert payload["status"] == "healthy"
    assert payload["mode"] == "real"
    assert payload["smtpHost"] == "smtp.example.com"
    assert payload["adminEmail"] == "admin@softdev-solutions.com"


def test_send_test_email(client: TestClient, harness: Harness) -> None:
    missing = client.post("/email/test", json={"to": "jo@example.com"})
    assert missing.status_code == 400

    response = client.post(
        "/email/test",
        json={"to": "jo@example.com", "firstName": "Jo", "lastName": "Bloggs", "company": "Initech"},
    )
    assert response.status_code == 200
    assert response.json()["messageId"] == harness.transport.sent[0]["Message-ID"]


def test_configure_email_writes_env_file(client: TestClient, harness: Harness) -> None:
    response = client.post(
        "/email/configure",
        json={"smtpHost": "smtp.example.com", "smtpPort": 465, "smtpUser": "me@example.com", "smtpPass": "pw"},
    )

    assert response.status_code == 200
    assert "envContent" not in response.json()
    content = (harness.env_dir / ".env.local").read_text(encoding="utf-8")
    assert "SMTP_PORT=465" in content
    assert "SMTP_FROM=me@example.com" in content


def test_configure_email_falls_back_to_manual_setup(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    app = harness.app(env_dir=tmp_path / "missing" / "dir")

    with TestClient(app) as client:
        response = client.post("/email/configure", json={"smtpUser": "me@example.com", "smtpPass": "pw"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["manualSetup"] is True
    assert "SMTP_USER=me@example.com" in payload["envContent"]


def test_configure_email_requires_credentials(client: TestClient) -> None:
    response = client.post("/email/configure", json={"smtpHost": "smtp.example.com"})
    assert response.status_code == 400
    assert response.json() == {"error": "SMTP User and Password are required"}


# ----------------------------------------------------------------------
# Request handling
# ----------------------------------------------------------------------
def test_responses_carry_a_request_id(client: TestClient) -> None:
    generated = client.get("/health/db")
    assert generated.headers["X-Request-ID"]

    echoed = client.get("/health/db", headers={"X-Request-ID": "req-123"})
    assert echoed.headers["X-Request-ID"] == "req-123"


class BrokenStore(SQLiteUserStore):
    async def list_all(self, limit=None, offset=None):
        raise RuntimeError("disk on fire")


def test_unexpected_errors_are_hidden(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    app = harness.app(store=BrokenStore(tmp_path / "broken.sqlite3"))

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/register", headers={"X-Request-ID": "req-500"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error. Please try again later."}
    assert response.headers["X-Request-ID"] == "req-500"
