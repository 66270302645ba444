"""
Queue Repository
================
Snapshot storage for the active task queue.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from scanning.models import AnalysisReport, FileEntry, ScanTask, TaskStatus

from ..models import QueueRecord

logger = logging.getLogger(__name__)


class QueueRepository:
    """Repository for queue snapshot rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def replace_all(self, tasks: Iterable[ScanTask]) -> int:
        """Delete every queued row and insert the given tasks in order."""
        await self.session.execute(delete(QueueRecord))
        records = [self._to_record(task, position) for position, task in enumerate(tasks)]
        self.session.add_all(records)
        await self.session.flush()
        return len(records)

    async def list_all(self) -> list[QueueRecord]:
        query = select(QueueRecord).order_by(QueueRecord.created_at, QueueRecord.position)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def file_ids(self) -> set[str]:
        result = await self.session.execute(select(QueueRecord.file_id))
        return set(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(QueueRecord))
        return result.scalar_one()

    async def clear(self) -> int:
        result = await self.session.execute(delete(QueueRecord))
        return result.rowcount or 0

    @staticmethod
    def _to_record(task: ScanTask, position: int) -> QueueRecord:
        return QueueRecord(
            id=task.id,
            position=position,
            file_id=task.file.id,
            file_name=task.file.name,
            file_path=task.file.path,
            file_size=task.file.size,
            file_type=task.file.type,
            file_sha256=task.file.sha256,
            status=task.status.value,
            progress=task.progress,
            error=task.error,
            analysis_id=task.analysis_id,
            report=task.report.to_dict() if task.report else None,
            archive_name=task.archive_name,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )

    @staticmethod
    def to_task(record: QueueRecord, content: Optional[bytes]) -> ScanTask:
        """Rehydrate a task from its row and (possibly missing) content blob."""
        return ScanTask(
            id=record.id,
            file=FileEntry(
                id=record.file_id,
                name=record.file_name,
                path=record.file_path or "",
                size=record.file_size,
                type=record.file_type or "application/octet-stream",
                sha256=record.file_sha256,
                content=content,
            ),
            status=TaskStatus(record.status),
            progress=record.progress or 0,
            error=record.error,
            analysis_id=record.analysis_id,
            report=AnalysisReport.from_dict(record.report) if record.report else None,
            created_at=record.created_at,
            updated_at=record.updated_at,
            archive_name=record.archive_name,
        )
