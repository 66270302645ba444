"""
Scanning Models Package
=======================
Data model for tasks, reports, history entries and settings.
"""

from .report import AnalysisReport, EngineResult, FileInfo, ScanStats
from .task import (
    ACTIVE_STATUSES,
    REPORT_STATUSES,
    TERMINAL_STATUSES,
    FileEntry,
    ScanTask,
    TaskStatus,
    generate_id,
    utcnow,
)
from .history import HistoryEntry, Settings

__all__ = [
    "AnalysisReport",
    "EngineResult",
    "FileInfo",
    "ScanStats",
    "ACTIVE_STATUSES",
    "REPORT_STATUSES",
    "TERMINAL_STATUSES",
    "FileEntry",
    "ScanTask",
    "TaskStatus",
    "generate_id",
    "utcnow",
    "HistoryEntry",
    "Settings",
]
