"""FastAPI application exposing the registration, contact and admin endpoints."""
from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import DEFAULT_ADMIN_EMAIL, DEFAULT_SMTP_HOST, DEFAULT_SMTP_PORT, ENV_FILE_NAME, Settings, render_env_file
from .errors import LeadsiteError, ServiceUnavailableError, ValidationError
from .handlers import AdminHandler, ContactHandler, RegistrationHandler
from .mailer import EmailData, EmailService
from .models import UserRecord
from .store import UserStore, create_store
from .validation import EmailValidator

logger = logging.getLogger("leadsite.api")

REGISTRATION_SUCCESS = "Registration successful! We will contact you within 24 hours."
CONTACT_SUCCESS = "Thank you for your message! We will get back to you within 24 hours."
INTERNAL_ERROR = "Internal server error. Please try again later."
REQUEST_ID_HEADER = "X-Request-ID"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=255)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    company: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)
    message: Optional[str] = None


class ContactRequest(_CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    service: Optional[str] = None
    message: Optional[str] = None


class AdminRequest(_CamelModel):
    action: Optional[str] = None
    days: Optional[int] = Field(default=None, ge=1)
    search_term: Optional[str] = Field(default=None, alias="searchTerm")


class EmailTestRequest(_CamelModel):
    to: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    company: Optional[str] = None


class EmailConfigRequest(_CamelModel):
    smtp_host: Optional[str] = Field(default=None, alias="smtpHost")
    smtp_port: Optional[str] = Field(default=None, alias="smtpPort")
    smtp_user: Optional[str] = Field(default=None, alias="smtpUser")
    smtp_pass: Optional[str] = Field(default=None, alias="smtpPass")
    smtp_from: Optional[str] = Field(default=None, alias="smtpFrom")
    admin_email: Optional[str] = Field(default=None, alias="adminEmail")

    @field_validator("smtp_port", mode="before")
    @classmethod
    def _port_as_text(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def user_to_summary(user: UserRecord) -> Dict[str, Any]:
    return {
        "id": user.id,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "email": user.email,
        "company": user.company,
        "createdAt": _isoformat(user.created_at),
    }


def user_to_listing(user: UserRecord) -> Dict[str, Any]:
    payload = user_to_summary(user)
    payload["phone"] = user.phone
    payload["message"] = user.message
    payload["updatedAt"] = _isoformat(user.updated_at)
    return payload


def _error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    content: Dict[str, Any] = {"error": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _trusted_proxy_hosts() -> list[str] | str:
    raw = os.getenv("LEADSITE_TRUSTED_PROXIES")
    if not raw:
        return "127.0.0.1"
    hosts = [item.strip() for item in raw.split(",") if item.strip()]
    return hosts or "127.0.0.1"


def create_app(
    *,
    store: UserStore | None = None,
    email_service: EmailService | None = None,
    validator: EmailValidator | None = None,
    settings: Settings | None = None,
    env_dir: Path | None = None,
) -> FastAPI:
    """Build the application.

    Collaborators default to the ones described by the environment. The store
    and the email service are started by the lifespan and released on
    shutdown; schema setup runs in the background so a slow database does not
    hold up startup.
    """

    if settings is None and (store is None or email_service is None):
        settings = Settings.from_env()
    if store is None:
        store = create_store(settings.database)
    if email_service is None:
        email_service = EmailService(settings.email)
    if validator is None:
        validator = EmailValidator()

    registration = RegistrationHandler(store, email_service)
    contact = ContactHandler(email_service, validator)
    admin = AdminHandler(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async def _warm_store() -> None:
            try:
                await store.initialize()
            except Exception as exc:
                logger.error("Database initialization failed: %s", str(exc)[:200])

        warmup = asyncio.ensure_future(_warm_store())
        app.state.store_warmup = warmup
        await email_service.start()
        try:
            yield
        finally:
            if not warmup.done():
                warmup.cancel()
                with suppress(asyncio.CancelledError):
                    await warmup
            await email_service.close()
            await store.close()

    app = FastAPI(
        title="SoftDev Solutions Lead Capture",
        description="Registration, contact and admin endpoints for the marketing site",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts())
    app.state.store = store
    app.state.email_service = email_service

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "%s %s -> %s (%.1f ms) [%s]",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request_id,
        )
        return response

    @app.exception_handler(LeadsiteError)
    async def _handle_leadsite_error(request: Request, exc: LeadsiteError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        if exc.details:
            return _error_response(exc.status_code, exc.message, details=exc.details)
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def _handle_invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Rejected request body for %s %s: %s", request.method, request.url.path, exc.errors())
        return _error_response(status.HTTP_400_BAD_REQUEST, "Invalid request body")

    @app.exception_handler(Exception)
    async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        logger.error(
            "Unhandled error for %s %s [%s]",
            request.method,
            request.url.path,
            request_id,
            exc_info=exc,
        )
        response = _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL_ERROR)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response

    # ------------------------------------------------------------------
    # Registrations
    # ------------------------------------------------------------------
    @app.post("/register")
    async def register_user(payload: RegisterRequest) -> Dict[str, Any]:
        user = await registration.register(
            first_name=payload.first_name,
            last_name=payload.last_name,
            email=payload.email,
            company=payload.company,
            phone=payload.phone,
            message=payload.message,
        )
        return {"success": True, "message": REGISTRATION_SUCCESS, "user": user_to_summary(user)}

    @app.get("/register")
    async def list_registrations(
        search: Optional[str] = None,
        company: Optional[str] = None,
        limit: Optional[int] = Query(default=None, ge=0),
        offset: Optional[int] = Query(default=None, ge=0),
    ) -> Dict[str, Any]:
        listing = await registration.list_users(search=search, company=company, limit=limit, offset=offset)
        return {
            "users": [user_to_listing(user) for user in listing.users],
            "total": listing.total,
            "returned": listing.returned,
        }

    @app.delete("/register")
    async def delete_registration(user_id: Optional[int] = Query(default=None, alias="id")) -> Dict[str, Any]:
        deleted = await registration.delete_user(user_id)
        return {"success": True, "userId": deleted}

    # ------------------------------------------------------------------
    # Contact form
    # ------------------------------------------------------------------
    @app.post("/contact")
    async def submit_contact(payload: ContactRequest) -> Dict[str, Any]:
        result = await contact.submit(
            name=payload.name,
            email=payload.email,
            message=payload.message,
            company=payload.company,
            phone=payload.phone,
            service=payload.service,
        )
        return {"success": True, "message": CONTACT_SUCCESS, "messageId": result.message_id}

    # ------------------------------------------------------------------
    # Health and administration
    # ------------------------------------------------------------------
    @app.get("/health/db")
    async def database_health() -> Dict[str, Any]:
        return await admin.health()

    @app.post("/admin/database")
    async def database_admin(payload: AdminRequest) -> Dict[str, Any]:
        logger.info("Database admin action requested: %s", payload.action)
        if payload.action == "stats":
            return await admin.stats()
        if payload.action == "recent":
            days = payload.days or 30
            users = await admin.recent(days)
            return {"users": [user_to_summary(user) for user in users], "count": len(users), "days": days}
        if payload.action == "search":
            users = await admin.search(payload.search_term)
            return {
                "users": [user_to_summary(user) for user in users],
                "count": len(users),
                "searchTerm": payload.search_term.strip(),
            }
        if payload.action == "companies":
            companies = await admin.companies()
            return {"companies": companies, "totalCompanies": len(companies)}
        raise ValidationError("Invalid action")

    # ------------------------------------------------------------------
    # Email diagnostics
    # ------------------------------------------------------------------
    @app.get("/email/test")
    async def email_status() -> Dict[str, Any]:
        connection = await email_service.test_connection()
        payload: Dict[str, Any] = {
            "status": "healthy" if connection.success else "error",
            "message": "Email service is working" if connection.success else (connection.error or "Unknown error"),
            "timestamp": _utc_now_iso(),
        }
        payload.update(email_service.status())
        if not connection.success:
            payload["error"] = connection.error
        return payload

    @app.post("/email/test")
    async def send_test_email(payload: EmailTestRequest) -> Dict[str, Any]:
        if not all((payload.to, payload.first_name, payload.last_name, payload.company)):
            raise ValidationError("Missing required fields: to, firstName, lastName, company")

        connection = await email_service.test_connection()
        if not connection.success:
            logger.error("Email connection test failed: %s", connection.error)
            raise ServiceUnavailableError("Email service not available")

        result = await email_service.send_welcome_email(
            EmailData(
                to=payload.to,
                first_name=payload.first_name,
                last_name=payload.last_name,
                company=payload.company,
            )
        )
        if not result.success:
            logger.error("Test email failed: %s", result.error)
            raise LeadsiteError("Failed to send email")
        logger.info("Test email sent to %s (%s)", payload.to, result.message_id)
        return {"success": True, "message": "Test email sent successfully", "messageId": result.message_id}

    @app.post("/email/configure")
    async def configure_email(payload: EmailConfigRequest) -> Dict[str, Any]:
        if not payload.smtp_user or not payload.smtp_pass:
            raise ValidationError("SMTP User and Password are required")

        env_content = render_env_file(
            smtp_host=payload.smtp_host or DEFAULT_SMTP_HOST,
            smtp_port=payload.smtp_port or str(DEFAULT_SMTP_PORT),
            smtp_user=payload.smtp_user,
            smtp_pass=payload.smtp_pass,
            smtp_from=payload.smtp_from or payload.smtp_user,
            admin_email=payload.admin_email or DEFAULT_ADMIN_EMAIL,
        )
        env_path = (env_dir or Path.cwd()) / ENV_FILE_NAME
        try:
            env_path.write_text(env_content, encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to write %s: %s", env_path, exc)
            return {
                "success": True,
                "message": f"Configuration prepared. Please create {ENV_FILE_NAME} manually with the following content:",
                "envContent": env_content,
                "manualSetup": True,
            }

        logger.info("Email configuration saved to %s", env_path)
        return {
            "success": True,
            "message": "Email configuration saved successfully. Please restart the service to apply changes.",
            "envPath": str(env_path),
        }

    return app


__all__ = ["create_app", "user_to_listing", "user_to_summary"]
