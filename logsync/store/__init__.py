"""Log storage."""

from .base import LogStore
from .sqlite_store import SQLiteLogStore

__all__ = ["LogStore", "SQLiteLogStore"]
