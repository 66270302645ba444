"""
Scan Task Models
================
File entries handed over by the extractor and the tasks that carry them
through the scan lifecycle.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .report import AnalysisReport


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return uuid.uuid4().hex


class TaskStatus(str, Enum):
    """Lifecycle status of a scan task."""
    PENDING = "pending"  # In queue, not yet started
    HASHING = "hashing"  # Computing content hash for duplicate detection
    UPLOADING = "uploading"  # Submitting to the scanning service
    SCANNING = "scanning"  # Waiting for the remote verdict
    COMPLETED = "completed"
    REUSED = "reused"  # Served from a previous scan result
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.REUSED, TaskStatus.ERROR})
ACTIVE_STATUSES = frozenset({TaskStatus.HASHING, TaskStatus.UPLOADING, TaskStatus.SCANNING})
REPORT_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.REUSED})


@dataclass(frozen=True)
class FileEntry:
    """An extracted artifact as delivered by the archive extractor."""
    id: str
    name: str
    size: int
    path: str = ""
    type: str = "application/octet-stream"
    content: Optional[bytes] = field(default=None, repr=False, compare=False)
    sha256: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return self.content is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the raw bytes."""
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "type": self.type,
            "sha256": self.sha256,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], content: Optional[bytes] = None) -> "FileEntry":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            path=data.get("path", ""),
            size=int(data.get("size", 0)),
            type=data.get("type", "application/octet-stream"),
            sha256=data.get("sha256"),
            content=content,
        )


@dataclass(frozen=True)
class ScanTask:
    """
    One artifact moving through the scan lifecycle.

    Instances are immutable snapshots; the task queue replaces them on every
    update.
    """
    id: str
    file: FileEntry
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    analysis_id: Optional[str] = None
    report: Optional[AnalysisReport] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    archive_name: Optional[str] = None

    @classmethod
    def create(cls, file: FileEntry, archive_name: Optional[str] = None) -> "ScanTask":
        now = utcnow()
        return cls(
            id=generate_id(),
            file=file,
            created_at=now,
            updated_at=now,
            archive_name=archive_name,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_record(self) -> dict[str, Any]:
        """Serialize for storage. Raw content is stored separately."""
        return {
            "id": self.id,
            "file": self.file.to_dict(),
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "analysis_id": self.analysis_id,
            "report": self.report.to_dict() if self.report else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "archive_name": self.archive_name,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any], content: Optional[bytes] = None) -> "ScanTask":
        report = data.get("report")
        return cls(
            id=data["id"],
            file=FileEntry.from_dict(data["file"], content=content),
            status=TaskStatus(data["status"]),
            progress=int(data.get("progress", 0)),
            error=data.get("error"),
            analysis_id=data.get("analysis_id"),
            report=AnalysisReport.from_dict(report) if report else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            archive_name=data.get("archive_name"),
        )
