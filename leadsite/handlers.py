"""Request logic for registrations, contact submissions and admin reporting."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import (
    DuplicateError,
    EmailDeliveryError,
    EmailNotConfiguredError,
    EmailServiceError,
    LeadsiteError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from .mailer import ContactSubmission, EmailData, EmailService, SendResult
from .models import NewUser, UserRecord
from .store import UserStore
from .validation import EmailValidator

registration_logger = logging.getLogger("leadsite.registration")
contact_logger = logging.getLogger("leadsite.contact")
admin_logger = logging.getLogger("leadsite.admin")

DUPLICATE_MESSAGE = "An account with this email already exists"
MISSING_FIELDS_MESSAGE = "All required fields must be provided"
INVALID_EMAIL_MESSAGE = "Please provide a valid email address"

SMTP_MAILBOX_MISSING = "The recipient email address does not exist. Please contact support directly."
SMTP_RECIPIENT_INVALID = "The recipient email address is invalid or unreachable. Please contact support."
SMTP_TEMPORARY = "Email service is temporarily unavailable. Please try again in a few minutes."
SMTP_NETWORK = "Network connection error. Please try again later."
SMTP_GENERIC = "Failed to send message. Please try again later."

_PERMANENT_RECIPIENT_CODES = {550, 551, 553}
_TEMPORARY_CODES = {421, 450, 451, 452}
_REPLY_CODE = re.compile(r"^\s*(\d{3})(?:[\s-]|$)")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _reply_code(error: EmailServiceError) -> Optional[int]:
    code = getattr(error, "code", None)
    if code is not None:
        return code
    match = _REPLY_CODE.match(error.message)
    return int(match.group(1)) if match else None


def describe_delivery_failure(error: EmailServiceError) -> str:
    """Map an SMTP failure to the message shown to the visitor.

    The rules are checked in order and the first match wins, so a ``5.1.1``
    rejection (which also carries code 550) gets the more specific message.
    """

    text = error.message.lower()
    code = _reply_code(error)

    if "5.1.1" in text:
        return SMTP_MAILBOX_MISSING
    if code in _PERMANENT_RECIPIENT_CODES or "invalid" in text or "unreachable" in text:
        return SMTP_RECIPIENT_INVALID
    if code in _TEMPORARY_CODES or "temporarily" in text:
        return SMTP_TEMPORARY
    if getattr(error, "connection_failed", False) or "connection" in text or "network" in text:
        return SMTP_NETWORK
    return SMTP_GENERIC


@dataclass(frozen=True)
class UserListing:
    users: List[UserRecord]
    total: int

    @property
    def returned(self) -> int:
        return len(self.users)


class RegistrationHandler:
    """Registers leads: validate, reject duplicates, persist, then notify.

    The notification steps are best-effort. Once the row exists the
    registration succeeds no matter what the mail server does.
    """

    def __init__(self, store: UserStore, email_service: EmailService) -> None:
        self._store = store
        self._email = email_service

    async def register(
        self,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
        company: Optional[str],
        phone: Optional[str],
        message: Optional[str] = None,
    ) -> UserRecord:
        registration_logger.info("User registration request received")

        if any(_blank(value) for value in (first_name, last_name, email, company, phone)):
            registration_logger.warning("Registration rejected: missing required fields")
            raise ValidationError(MISSING_FIELDS_MESSAGE)

        email = email.strip()
        if not EmailValidator.validate_format(email):
            registration_logger.warning("Registration rejected: invalid email format %r", email)
            raise ValidationError(INVALID_EMAIL_MESSAGE)

        existing = await self._store.get_by_email(email)
        if existing is not None:
            registration_logger.warning("Registration rejected: %s already registered", existing.email)
            raise DuplicateError(DUPLICATE_MESSAGE)

        # A concurrent registration for the same address surfaces here as
        # DuplicateEmailError, which carries the same message and status.
        user = await self._store.create(
            NewUser(
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                email=email,
                company=company.strip(),
                phone=phone.strip(),
                message=(message or "").strip(),
            )
        )
        registration_logger.info("User registration successful (id=%s email=%s)", user.id, user.email)

        email_data = EmailData(
            to=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            company=user.company,
        )
        await self._notify_welcome(user, email_data)
        await self._notify_admin(user, email_data)
        return user

    async def _notify_welcome(self, user: UserRecord, data: EmailData) -> None:
        try:
            result = await self._email.send_welcome_email(data)
            if result.success and result.message_id:
                await self._store.mark_welcome_sent(user.id, result.message_id)
                registration_logger.info("Welcome email sent (user=%s message=%s)", user.id, result.message_id)
            else:
                registration_logger.warning("Failed to send welcome email (user=%s): %s", user.id, result.error)
        except Exception:
            registration_logger.exception("Welcome email step failed for user %s", user.id)

    async def _notify_admin(self, user: UserRecord, data: EmailData) -> None:
        try:
            result = await self._email.send_admin_notification(data)
            if result.success and result.message_id:
                await self._store.mark_admin_notified(user.id, result.message_id)
                registration_logger.info("Admin notification sent (user=%s message=%s)", user.id, result.message_id)
            else:
                registration_logger.warning("Failed to send admin notification (user=%s): %s", user.id, result.error)
        except Exception:
            registration_logger.exception("Admin notification step failed for user %s", user.id)

    async def list_users(
        self,
        *,
        search: Optional[str] = None,
        company: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> UserListing:
        if search:
            users = await self._store.search(search)
        elif company:
            users = await self._store.list_by_company(company)
        else:
            # A zero limit means "no limit", like an omitted one.
            users = await self._store.list_all(limit=limit or None, offset=offset or None)
        total = await self._store.count()
        return UserListing(users=users, total=total)

    async def delete_user(self, user_id: Optional[int]) -> int:
        if user_id is None:
            raise ValidationError("User ID is required")
        removed = await self._store.delete(user_id)
        if not removed:
            raise NotFoundError("User not found")
        registration_logger.info("Deleted user %s", user_id)
        return user_id


class ContactHandler:
    """Forward contact-form submissions to the site's admin mailbox."""

    def __init__(self, email_service: EmailService, validator: EmailValidator) -> None:
        self._email = email_service
        self._validator = validator

    async def submit(
        self,
        *,
        name: Optional[str],
        email: Optional[str],
        message: Optional[str],
        company: Optional[str] = None,
        phone: Optional[str] = None,
        service: Optional[str] = None,
    ) -> SendResult:
        if _blank(name) or _blank(email) or _blank(message):
            raise ValidationError("Name, email, and message are required")

        contact_logger.info("Contact form submission received")

        admin_email = self._email.settings.admin_email
        validation = await self._validator.validate(admin_email)
        if not validation.is_valid:
            contact_logger.error("Target email validation failed for %s: %s", admin_email, validation.error)
            raise ValidationError(
                f"The recipient email address is not valid: {validation.error}. "
                "Please contact us at (+65) 9155 6241.",
                details=validation.details,
            )

        connection = await self._email.test_connection()
        if not connection.success:
            contact_logger.error("Email service not available: %s", connection.error)
            raise ServiceUnavailableError("Email service is not available. Please try again later.")

        submission = ContactSubmission(
            name=name.strip(),
            email=email.strip(),
            message=message.strip(),
            company=(company or "").strip() or None,
            phone=(phone or "").strip() or None,
            service=(service or "").strip() or None,
        )
        try:
            return await self._email.send_contact_message(submission)
        except EmailNotConfiguredError as exc:
            contact_logger.error("Failed to send contact email: %s", exc.message)
            raise ServiceUnavailableError("Email service is not available. Please try again later.") from exc
        except EmailDeliveryError as exc:
            contact_logger.error("Failed to send contact email: %s", exc.message)
            raise LeadsiteError(describe_delivery_failure(exc)) from exc


class AdminHandler:
    """Read-only reporting over the record store."""

    def __init__(self, store: UserStore) -> None:
        self._store = store

    async def health(self) -> Dict[str, Any]:
        try:
            count = await self._store.count()
        except Exception as exc:
            admin_logger.error("Database health check failed: %s", exc)
            return {"status": "error", "message": str(exc) or "Unknown error", "userCount": 0, "timestamp": _utc_now_iso()}
        return {
            "status": "healthy",
            "message": "Database connection successful",
            "userCount": count,
            "timestamp": _utc_now_iso(),
        }

    async def stats(self) -> Dict[str, Any]:
        total = await self._store.count()
        recent = await self._store.list_recent(30)
        return {
            "totalUsers": total,
            "recentUsers": len(recent),
            "stats": {
                "total": total,
                "last30Days": len(recent),
                "averagePerDay": round(len(recent) / 30, 2),
            },
        }

    async def recent(self, days: int = 30) -> List[UserRecord]:
        if days < 1:
            raise ValidationError("Days must be a positive number")
        return await self._store.list_recent(days)

    async def search(self, term: Optional[str]) -> List[UserRecord]:
        if _blank(term):
            raise ValidationError("Search term is required")
        return await self._store.search(term.strip())

    async def companies(self) -> List[Dict[str, Any]]:
        return [{"name": name, "count": count} for name, count in await self._store.list_companies()]


__all__ = [
    "AdminHandler",
    "ContactHandler",
    "RegistrationHandler",
    "UserListing",
    "describe_delivery_failure",
]
