"""Lead capture backend for the SoftDev Solutions marketing site."""

from __future__ import annotations

from typing import Any

from .config import Settings
from .store import UserStore, create_store


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the HTTP application."""

    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


def create_application(*args: Any, **kwargs: Any):
    """Factory function for the application configured from the environment."""

    from .application import create_application as _create_application

    return _create_application(*args, **kwargs)


__all__ = [
    "Settings",
    "UserStore",
    "create_app",
    "create_application",
    "create_store",
]
