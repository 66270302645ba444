"""
Persistence Package
===================
SQLite-backed storage for the scan queue, history, content blobs and
settings.
"""

from .config import PersistenceConfig
from .database import DatabaseManager
from .exceptions import PersistenceError
from .models import HistoryPage, SearchOptions, StorageStats
from .persistence_store import PersistenceStore

__all__ = [
    "PersistenceConfig",
    "DatabaseManager",
    "PersistenceError",
    "HistoryPage",
    "SearchOptions",
    "StorageStats",
    "PersistenceStore",
]
