"""Storage package providing persistence for alerts, users and price history."""

from .sqlite_repository import SQLiteRepository

__all__ = ["SQLiteRepository"]
