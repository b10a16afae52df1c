"""Application factory wired from the process environment."""
from __future__ import annotations

from fastapi import FastAPI

from .api import create_app
from .config import Settings
from .mailer import EmailService
from .store import create_store


def create_application(*, settings: Settings | None = None) -> FastAPI:
    """Create the ASGI application with the configured store and mailer."""

    if settings is None:
        settings = Settings.from_env()

    store = create_store(settings.database)
    email_service = EmailService(settings.email)
    app = create_app(store=store, email_service=email_service, settings=settings)
    app.state.settings = settings
    return app


__all__ = ["create_application"]
