"""
Persistence package exposing the SQLite run history store.
"""

from .store import SQLiteRunStore

__all__ = ["SQLiteRunStore"]
