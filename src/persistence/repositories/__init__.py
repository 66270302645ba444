"""
Persistence Repositories
========================
One repository per table, each bound to a transaction's session.
"""

from .file_repository import FileRepository
from .history_repository import HistoryRepository
from .queue_repository import QueueRepository
from .settings_repository import SettingsRepository

__all__ = [
    "FileRepository",
    "HistoryRepository",
    "QueueRepository",
    "SettingsRepository",
]
