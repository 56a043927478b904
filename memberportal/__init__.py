"""Core utilities for the member portal tracking and admission service."""

from __future__ import annotations

from typing import Any

from .config import PortalSettings, load_settings
from .database import Database, resolve_database_path


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the portal API application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Database",
    "PortalSettings",
    "create_app",
    "load_settings",
    "resolve_database_path",
]
