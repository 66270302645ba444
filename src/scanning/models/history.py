"""
History Models
==============
Durable records of finished tasks and the user-adjustable settings that
govern their retention.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .report import AnalysisReport
from .task import TaskStatus, utcnow


@dataclass(frozen=True)
class HistoryEntry:
    """Terminal record of a scan task. Created once, never mutated."""
    id: str
    file_id: str
    file_name: str
    file_size: int
    file_type: str
    status: TaskStatus
    progress: int = 0
    error: Optional[str] = None
    analysis_id: Optional[str] = None
    report: Optional[AnalysisReport] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime = field(default_factory=utcnow)
    archive_name: Optional[str] = None
    has_file: bool = False

    @property
    def is_reusable(self) -> bool:
        """Whether duplicate detection may serve this entry's result."""
        return (
            self.status in (TaskStatus.COMPLETED, TaskStatus.REUSED)
            and self.report is not None
            and self.report.has_file_info
        )

    @property
    def has_threats(self) -> Optional[bool]:
        """None when the entry carries no classifiable report."""
        if self.status not in (TaskStatus.COMPLETED, TaskStatus.REUSED) or self.report is None:
            return None
        return not self.report.is_safe

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "file_type": self.file_type,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "analysis_id": self.analysis_id,
            "report": self.report.to_dict() if self.report else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "archive_name": self.archive_name,
            "has_file": self.has_file,
        }


@dataclass(frozen=True)
class Settings:
    """Persisted user settings."""
    history_retention_days: int = 30
    auto_start_scanning: bool = True
    last_cleanup: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "history_retention_days": self.history_retention_days,
            "auto_start_scanning": self.auto_start_scanning,
            "last_cleanup": self.last_cleanup.isoformat(),
        }
