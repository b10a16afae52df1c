"""Transactional email delivery over SMTP."""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Dict, Optional, Protocol

import aiosmtplib
import httpx
from jinja2 import Environment, PackageLoader, select_autoescape

from .config import EmailSettings
from .errors import EmailDeliveryError, EmailNotConfiguredError, EmailServiceError

logger = logging.getLogger("leadsite.mailer")

SENDER_NAME = "SoftDev Solutions"
SITE_URL = "https://softdev-solutions.com"
TEST_ACCOUNT_API = "https://api.nodemailer.com/user"
SMTP_TIMEOUT = 30.0

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class EmailData:
    to: str
    first_name: str
    last_name: str
    company: str
    confirmation_token: Optional[str] = None


@dataclass(frozen=True)
class ContactSubmission:
    name: str
    email: str
    message: str
    company: Optional[str] = None
    phone: Optional[str] = None
    service: Optional[str] = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class Transport(Protocol):
    host: str
    port: int

    async def send(self, message: EmailMessage) -> str: ...

    async def verify(self) -> None: ...


@dataclass(frozen=True)
class SMTPTransport:
    """Connection parameters for one SMTP relay."""

    host: str
    port: int
    username: str
    password: str
    secure: bool = False
    timeout: float = SMTP_TIMEOUT

    async def send(self, message: EmailMessage) -> str:
        try:
            _, response = await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                use_tls=self.secure,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as exc:
            raise _delivery_error(exc) from exc
        except OSError as exc:
            raise EmailDeliveryError(f"Connection to {self.host}:{self.port} failed: {exc}", connection_failed=True) from exc
        return response

    async def verify(self) -> None:
        client = aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=self.secure, timeout=self.timeout)
        try:
            await client.connect()
            await client.login(self.username, self.password)
        except aiosmtplib.SMTPException as exc:
            raise _delivery_error(exc) from exc
        except OSError as exc:
            raise EmailDeliveryError(f"Connection to {self.host}:{self.port} failed: {exc}", connection_failed=True) from exc
        finally:
            if client.is_connected:
                try:
                    await client.quit()
                except aiosmtplib.SMTPException:
                    client.close()


def _delivery_error(exc: aiosmtplib.SMTPException) -> EmailDeliveryError:
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        exc = exc.recipients[0]
    code = getattr(exc, "code", None)
    connection_failed = isinstance(
        exc,
        (
            aiosmtplib.SMTPConnectError,
            aiosmtplib.SMTPConnectTimeoutError,
            aiosmtplib.SMTPServerDisconnected,
            aiosmtplib.SMTPTimeoutError,
        ),
    )
    message = str(exc)
    if code is not None and str(code) not in message:
        message = f"{code} {message}"
    return EmailDeliveryError(message, code=code, connection_failed=connection_failed)


@dataclass(frozen=True)
class EtherealAccount:
    user: str
    password: str
    host: str
    port: int
    secure: bool


async def create_ethereal_account(client: httpx.AsyncClient) -> EtherealAccount:
    """Provision a disposable Ethereal mailbox for non-production delivery."""

    response = await client.post(TEST_ACCOUNT_API, json={"requestor": "leadsite", "version": "1.0.0"})
    response.raise_for_status()
    payload = response.json()
    if payload.get("status") != "success":
        raise ValueError(f"Test account request was rejected: {payload.get('error', 'unknown error')}")
    smtp = payload.get("smtp") or {}
    return EtherealAccount(
        user=str(payload["user"]),
        password=str(payload["pass"]),
        host=str(smtp.get("host", "smtp.ethereal.email")),
        port=int(smtp.get("port", 587)),
        secure=bool(smtp.get("secure", False)),
    )


def generate_confirmation_token() -> str:
    # Shown to the user only; nothing verifies it.
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(26))


def _template_environment() -> Environment:
    return Environment(
        loader=PackageLoader("leadsite", "templates"),
        autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
        trim_blocks=True,
        lstrip_blocks=True,
    )


class EmailService:
    """Render and send the site's transactional mail.

    With real SMTP credentials the transport is ready immediately. Otherwise
    :meth:`start` provisions a throwaway test account; until it succeeds every
    send reports that the service is not configured.
    """

    def __init__(
        self,
        settings: EmailSettings,
        *,
        transport: Optional[Transport] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client
        self._templates = _template_environment()
        self._ethereal_account: Optional[EtherealAccount] = None
        self.mode = "real" if settings.has_real_smtp else "test"

        self._transport: Optional[Transport] = transport
        if self._transport is None and self.mode == "real":
            self._transport = SMTPTransport(
                host=settings.host,
                port=settings.port,
                username=settings.user or "",
                password=settings.password or "",
                secure=settings.secure,
            )
            logger.info(
                "Real SMTP transport initialized (host=%s port=%s user=%s)",
                settings.host,
                settings.port,
                settings.user,
            )
        elif self._transport is None:
            logger.info("No real SMTP configured; a test account will be used. Set SMTP_USER and SMTP_PASS to send real email.")

    @property
    def settings(self) -> EmailSettings:
        return self._settings

    @property
    def is_configured(self) -> bool:
        return self._transport is not None

    async def start(self) -> None:
        if self._transport is not None:
            return
        try:
            if self._http_client is not None:
                account = await create_ethereal_account(self._http_client)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    account = await create_ethereal_account(client)
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.error("Failed to create test email account: %s", exc)
            return

        self._ethereal_account = account
        self._transport = SMTPTransport(
            host=account.host,
            port=account.port,
            username=account.user,
            password=account.password,
            secure=account.secure,
        )
        logger.info("Test email account created for development")
        logger.info("Test account user: %s", account.user)
        logger.info("Test account pass: %s", account.password)

    async def close(self) -> None:
        self._transport = None

    # ------------------------------------------------------------------
    # Message construction
    # ------------------------------------------------------------------
    def _build_message(self, *, to: str, subject: str, html: str, text: str, reply_to: Optional[str] = None) -> EmailMessage:
        sender = self._settings.sender
        message = EmailMessage()
        message["From"] = formataddr((SENDER_NAME, sender))
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=sender.rpartition("@")[2] or None)
        if reply_to:
            message["Reply-To"] = reply_to
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        return message

    def _render(self, name: str, **context: Any) -> tuple[str, str]:
        html = self._templates.get_template(f"{name}.html").render(**context)
        text = self._templates.get_template(f"{name}.txt").render(**context)
        return html, text

    async def _deliver(self, message: EmailMessage) -> str:
        if self._transport is None:
            raise EmailNotConfiguredError()
        await self._transport.send(message)
        return str(message["Message-ID"])

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def send_welcome_email(self, data: EmailData) -> SendResult:
        token = data.confirmation_token or generate_confirmation_token()
        html, text = self._render(
            "welcome",
            data=data,
            token=token,
            registered_on=datetime.now(timezone.utc).strftime("%d %B %Y"),
            site_url=SITE_URL,
        )
        message = self._build_message(
            to=data.to,
            subject=f"Welcome to {SENDER_NAME}, {data.first_name}!",
            html=html,
            text=text,
        )

        logger.info("Sending welcome email to %s", data.to)
        try:
            message_id = await self._deliver(message)
        except EmailServiceError as exc:
            logger.error("Failed to send welcome email to %s: %s", data.to, exc.message)
            return SendResult(success=False, error=exc.message)

        logger.info("Welcome email sent to %s (%s)", data.to, message_id)
        return SendResult(success=True, message_id=message_id)

    async def send_admin_notification(self, data: EmailData) -> SendResult:
        admin_email = self._settings.admin_email
        html, text = self._render(
            "admin_notification",
            data=data,
            registered_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S %Z"),
        )
        message = self._build_message(
            to=admin_email,
            subject=f"New User Registration: {data.first_name} {data.last_name}",
            html=html,
            text=text,
        )

        try:
            message_id = await self._deliver(message)
        except EmailServiceError as exc:
            logger.error("Failed to send admin notification: %s", exc.message)
            return SendResult(success=False, error=exc.message)

        logger.info("Admin notification sent to %s (%s)", admin_email, message_id)
        return SendResult(success=True, message_id=message_id)

    async def send_contact_message(self, submission: ContactSubmission) -> SendResult:
        """Deliver a contact-form submission to the admin mailbox.

        Unlike the registration emails this raises on failure, because the
        submission is lost if delivery does not happen.
        """

        admin_email = self._settings.admin_email
        html, text = self._render(
            "contact",
            submission=submission,
            submitted_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S %Z"),
        )
        message = self._build_message(
            to=admin_email,
            subject=f"New Contact Form: {submission.name}",
            html=html,
            text=text,
            reply_to=submission.email,
        )

        logger.info("Sending contact form email to %s", admin_email)
        message_id = await self._deliver(message)
        logger.info("Contact form email accepted by SMTP (%s)", message_id)
        return SendResult(success=True, message_id=message_id)

    async def test_connection(self) -> SendResult:
        if self._transport is None:
            return SendResult(success=False, error="Transporter not initialized")
        try:
            await self._transport.verify()
        except EmailServiceError as exc:
            logger.error("Email connection failed: %s", exc.message)
            return SendResult(success=False, error=exc.message)
        logger.info("Email connection verified")
        return SendResult(success=True)

    def status(self) -> Dict[str, Any]:
        settings = self._settings
        if self.mode == "real":
            return {
                "mode": "real",
                "smtpHost": settings.host,
                "smtpPort": settings.port,
                "smtpUser": settings.user,
                "smtpFrom": settings.sender,
                "adminEmail": settings.admin_email,
            }
        payload: Dict[str, Any] = {"mode": "test", "testMode": True}
        if self._ethereal_account is not None:
            payload["testAccountUser"] = self._ethereal_account.user
        return payload


__all__ = [
    "ContactSubmission",
    "EmailData",
    "EmailService",
    "SMTPTransport",
    "SendResult",
    "EtherealAccount",
    "create_ethereal_account",
    "generate_confirmation_token",
]
