"""Environment-driven configuration for the record store and the mailer."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import quote

DEFAULT_POSTGRES_URL = "postgresql://localhost:5432/softdev_solutions"
DEFAULT_SMTP_HOST = "smtp.gmail.com"
DEFAULT_SMTP_PORT = 587
DEFAULT_SENDER = "contact@softdev-solutions.com"
DEFAULT_ADMIN_EMAIL = "contact@softdev-solutions.com"

# Placeholder credentials shipped in sample env files; they never count as real SMTP.
TEST_ACCOUNT_USER = "ethereal.user@ethereal.email"
TEST_ACCOUNT_PASSWORD = "ethereal.pass"

ENV_FILE_NAME = ".env.local"


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the embedded SQLite store."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "leadsite.sqlite3").resolve(strict=False)


@dataclass(frozen=True)
class DatabaseSettings:
    """Which record store backend to use and how to reach it."""

    backend: str
    url: str
    sqlite_path: Path
    production: bool = False

    @property
    def is_render(self) -> bool:
        return "render.com" in self.url

    @property
    def requires_ssl(self) -> bool:
        return self.production or "render.com" in self.url or "amazonaws.com" in self.url

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "DatabaseSettings":
        env = os.environ if env is None else env

        url = _clean(env.get("DATABASE_URL")) or _clean(env.get("POSTGRES_URL"))
        host = _clean(env.get("POSTGRES_HOST"))
        if url is None and host is not None:
            user = _clean(env.get("POSTGRES_USER"))
            password = env.get("POSTGRES_PASSWORD") or ""
            port = _clean(env.get("POSTGRES_PORT")) or "5432"
            database = _clean(env.get("POSTGRES_DB")) or "softdev_solutions"
            credentials = ""
            if user:
                credentials = quote(user, safe="")
                if password:
                    credentials += ":" + quote(password, safe="")
                credentials += "@"
            url = f"postgresql://{credentials}{host}:{port}/{database}"

        backend = (_clean(env.get("DATABASE_BACKEND")) or "").lower()
        if not backend:
            backend = "postgres" if url else "sqlite"
        if backend in {"postgresql", "pg"}:
            backend = "postgres"
        if backend not in {"postgres", "sqlite"}:
            raise ValueError(f"Unsupported DATABASE_BACKEND '{backend}'; expected 'postgres' or 'sqlite'")

        return DatabaseSettings(
            backend=backend,
            url=url or DEFAULT_POSTGRES_URL,
            sqlite_path=resolve_database_path(env.get("LEADSITE_DB_PATH")),
            production=(env.get("LEADSITE_ENV") or "").strip().lower() == "production",
        )


@dataclass(frozen=True)
class EmailSettings:
    """SMTP credentials and addressing for outbound mail."""

    host: str = DEFAULT_SMTP_HOST
    port: int = DEFAULT_SMTP_PORT
    secure: bool = False
    user: Optional[str] = None
    password: Optional[str] = None
    sender: str = DEFAULT_SENDER
    admin_email: str = DEFAULT_ADMIN_EMAIL

    @property
    def has_real_smtp(self) -> bool:
        if not self.user or not self.password:
            return False
        return self.user != TEST_ACCOUNT_USER and self.password != TEST_ACCOUNT_PASSWORD

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "EmailSettings":
        env = os.environ if env is None else env
        raw_port = _clean(env.get("SMTP_PORT"))
        try:
            port = int(raw_port) if raw_port else DEFAULT_SMTP_PORT
        except ValueError as exc:
            raise ValueError(f"SMTP_PORT must be an integer, got '{raw_port}'") from exc

        return EmailSettings(
            host=_clean(env.get("SMTP_HOST")) or DEFAULT_SMTP_HOST,
            port=port,
            secure=_env_flag(env.get("SMTP_SECURE"), False),
            user=_clean(env.get("SMTP_USER")),
            password=env.get("SMTP_PASS") or None,
            sender=_clean(env.get("SMTP_FROM")) or DEFAULT_SENDER,
            admin_email=_clean(env.get("ADMIN_EMAIL")) or DEFAULT_ADMIN_EMAIL,
        )


@dataclass(frozen=True)
class Settings:
    database: DatabaseSettings
    email: EmailSettings

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "Settings":
        return Settings(
            database=DatabaseSettings.from_env(env),
            email=EmailSettings.from_env(env),
        )


def render_env_file(
    *,
    smtp_host: str,
    smtp_port: str,
    smtp_user: str,
    smtp_pass: str,
    smtp_from: str,
    admin_email: str,
) -> str:
    """Render the contents of an ``.env.local`` file for real SMTP delivery."""

    return (
        "# Real Email Configuration\n"
        f"SMTP_HOST={smtp_host}\n"
        f"SMTP_PORT={smtp_port}\n"
        "SMTP_SECURE=false\n"
        f"SMTP_USER={smtp_user}\n"
        f"SMTP_PASS={smtp_pass}\n"
        f"SMTP_FROM={smtp_from}\n"
        f"ADMIN_EMAIL={admin_email}\n"
        "LEADSITE_ENV=production\n"
    )


__all__ = [
    "DatabaseSettings",
    "EmailSettings",
    "ENV_FILE_NAME",
    "Settings",
    "TEST_ACCOUNT_PASSWORD",
    "TEST_ACCOUNT_USER",
    "render_env_file",
    "resolve_database_path",
]
