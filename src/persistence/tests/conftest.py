"""
Test fixtures for persistence layer tests.
"""

from __future__ import annotations

from dataclasses import replace
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio

from scanning.models import (
    AnalysisReport,
    FileEntry,
    FileInfo,
    ScanStats,
    ScanTask,
    TaskStatus,
    utcnow,
)

from ..config import PersistenceConfig
from ..persistence_store import PersistenceStore


@pytest.fixture
def persistence_config(tmp_path) -> PersistenceConfig:
    """SQLite database in a per-test directory."""
    return PersistenceConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'scanner.db'}")


@pytest_asyncio.fixture
async def store(persistence_config) -> AsyncGenerator[PersistenceStore, None]:
    """Initialized store; closed after the test."""
    store = PersistenceStore(persistence_config)
    await store.initialize()
    yield store
    await store.close()


def make_task(
    name: str = "sample.exe",
    content: Optional[bytes] = b"MZ sample",
    status: TaskStatus = TaskStatus.PENDING,
    malicious: int = 0,
    sha256: Optional[str] = "ab" * 32,
    file_id: Optional[str] = None,
    archive_name: Optional[str] = None,
) -> ScanTask:
    """Build a task in the given status with a consistent report."""
    size = len(content) if content is not None else 10
    entry = FileEntry(
        id=file_id or f"file-{name}",
        name=name,
        size=size,
        path=f"extracted/{name}",
        content=content,
    )
    task = ScanTask.create(entry, archive_name=archive_name)

    if status in (TaskStatus.COMPLETED, TaskStatus.REUSED):
        file_info = FileInfo(sha256=sha256, size=size) if sha256 else None
        report = AnalysisReport(
            id=f"analysis-{name}",
            stats=ScanStats(malicious=malicious, undetected=70 - malicious),
            file_info=file_info,
        )
        return replace(
            task,
            status=status,
            progress=100,
            analysis_id=report.id,
            report=report,
            updated_at=utcnow(),
        )
    if status == TaskStatus.ERROR:
        return replace(task, status=status, progress=10, error="Upload failed")
    if status == TaskStatus.SCANNING:
        return replace(task, status=status, progress=60, analysis_id=f"analysis-{name}")
    return replace(task, status=status)
