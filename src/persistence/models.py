"""
Persistence Models
==================
Database tables for the queue snapshot, scan history, content blobs and
settings, plus the query/result types of the history API.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import declarative_base

from scanning.models import HistoryEntry, TaskStatus

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on backends that store naive values."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class QueueRecord(Base):
    """Snapshot of one queued task. The table is rewritten on every save."""
    __tablename__ = "scan_queue"

    id = Column(String(64), primary_key=True)
    position = Column(Integer, nullable=False, default=0)

    # File reference; raw content lives in scan_files
    file_id = Column(String(128), nullable=False)
    file_name = Column(String(512), nullable=False)
    file_path = Column(String(1024), default="")
    file_size = Column(Integer, nullable=False, default=0)
    file_type = Column(String(128), default="application/octet-stream")
    file_sha256 = Column(String(64))

    # Lifecycle
    status = Column(String(16), nullable=False)
    progress = Column(Integer, default=0)
    error = Column(Text)
    analysis_id = Column(String(256))
    report = Column(JSON)
    archive_name = Column(String(512))

    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class HistoryRecord(Base):
    """
    Terminal record of a scan.

    ``report_sha256``/``report_size`` copy the report's file metadata so
    duplicate lookups and invalid-entry cleanup can run as indexed queries;
    they are NULL when the report carries no usable metadata.
    """
    __tablename__ = "scan_history"

    id = Column(String(64), primary_key=True)
    file_id = Column(String(128), nullable=False, index=True)
    file_name = Column(String(512), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    file_type = Column(String(128), default="application/octet-stream")

    status = Column(String(16), nullable=False, index=True)
    progress = Column(Integer, default=0)
    error = Column(Text)
    analysis_id = Column(String(256))
    report = Column(JSON)
    archive_name = Column(String(512))
    has_file = Column(Boolean, default=False)

    # Denormalized report fields
    report_sha256 = Column(String(64))
    report_size = Column(Integer)
    malicious_count = Column(Integer)

    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_history_status_completed", "status", "completed_at"),
        Index("ix_history_report_key", "report_sha256", "report_size"),
    )


class FileRecord(Base):
    """Raw content blob keyed by file id."""
    __tablename__ = "scan_files"

    id = Column(String(128), primary_key=True)
    name = Column(String(512), nullable=False)
    type = Column(String(128), default="application/octet-stream")
    size = Column(Integer, nullable=False, default=0)
    content = Column(LargeBinary, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)


class SettingsRecord(Base):
    """Single-row settings table."""
    __tablename__ = "scan_settings"

    id = Column(Integer, primary_key=True, default=1)
    history_retention_days = Column(Integer, nullable=False, default=30)
    auto_start_scanning = Column(Boolean, nullable=False, default=True)
    last_cleanup = Column(UTCDateTime, nullable=False)


# =============================================================================
# History query types
# =============================================================================

@dataclass
class SearchOptions:
    """History filters. All criteria are optional and combined with AND."""
    query: Optional[str] = None  # Substring of the file name
    status: Optional[TaskStatus] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    has_threats: Optional[bool] = None
    offset: int = 0
    limit: int = 50


@dataclass
class HistoryPage:
    entries: list[HistoryEntry] = field(default_factory=list)
    total: int = 0
    has_more: bool = False


@dataclass
class StorageStats:
    queue_count: int = 0
    history_count: int = 0
    file_count: int = 0
    total_file_bytes: int = 0
