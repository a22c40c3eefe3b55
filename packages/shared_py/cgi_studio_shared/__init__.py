"""Shared package for the CGI studio services."""

from .config import Settings, get_settings
from .db import Base, Database

__all__ = [
    "Settings",
    "get_settings",
    "Base",
    "Database",
]
