"""
History Repository
==================
Repository for terminal scan records: append, filtered search, duplicate
lookup, retention and maintenance deletes.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from scanning.models import (
    AnalysisReport,
    HistoryEntry,
    ScanTask,
    TaskStatus,
    generate_id,
    utcnow,
)

from ..models import HistoryRecord, SearchOptions

logger = logging.getLogger(__name__)

REUSABLE_STATUSES = (TaskStatus.COMPLETED.value, TaskStatus.REUSED.value)


class HistoryRepository:
    """Repository for scan history operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        task: ScanTask,
        has_file: bool = False,
        completed_at: Optional[datetime] = None,
    ) -> HistoryEntry:
        """Append a history record for a terminal task."""
        report = task.report
        file_info = report.file_info if report is not None and report.has_file_info else None

        record = HistoryRecord(
            id=generate_id(),
            file_id=task.file.id,
            file_name=task.file.name,
            file_size=task.file.size,
            file_type=task.file.type,
            status=task.status.value,
            progress=task.progress,
            error=task.error,
            analysis_id=task.analysis_id,
            report=report.to_dict() if report else None,
            archive_name=task.archive_name,
            has_file=has_file,
            report_sha256=file_info.sha256.lower() if file_info else None,
            report_size=file_info.size if file_info else None,
            malicious_count=report.stats.malicious if report else None,
            created_at=task.created_at,
            updated_at=task.updated_at,
            completed_at=completed_at or utcnow(),
        )
        self.session.add(record)
        await self.session.flush()
        return self.to_entry(record)

    async def get(self, entry_id: str) -> Optional[HistoryEntry]:
        record = await self.session.get(HistoryRecord, entry_id)
        return self.to_entry(record) if record else None

    async def find_reusable(self, sha256: str, size: int) -> Optional[HistoryEntry]:
        """Most recently completed completed/reused entry whose report matches the key."""
        query = (
            select(HistoryRecord)
            .where(
                HistoryRecord.status.in_(REUSABLE_STATUSES),
                HistoryRecord.report_sha256 == sha256.lower(),
                HistoryRecord.report_size == size,
            )
            .order_by(HistoryRecord.completed_at.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        record = result.scalar_one_or_none()
        return self.to_entry(record) if record else None

    async def search(self, options: SearchOptions) -> tuple[list[HistoryEntry], int]:
        """
        Filtered, newest-first page of history.

        Returns:
            Tuple of (entries on the page, total matching entries)
        """
        conditions = []
        if options.query:
            conditions.append(HistoryRecord.file_name.ilike(f"%{options.query}%"))
        if options.status:
            conditions.append(HistoryRecord.status == TaskStatus(options.status).value)
        if options.date_from:
            conditions.append(HistoryRecord.completed_at >= options.date_from)
        if options.date_to:
            conditions.append(HistoryRecord.completed_at <= options.date_to)
        if options.has_threats is not None:
            conditions.append(HistoryRecord.status.in_(REUSABLE_STATUSES))
            if options.has_threats:
                conditions.append(HistoryRecord.malicious_count > 0)
            else:
                conditions.append(HistoryRecord.malicious_count == 0)

        where = and_(*conditions) if conditions else None

        count_query = select(func.count()).select_from(HistoryRecord)
        query = select(HistoryRecord)
        if where is not None:
            count_query = count_query.where(where)
            query = query.where(where)

        total = (await self.session.execute(count_query)).scalar_one()

        query = query.order_by(HistoryRecord.completed_at.desc())
        query = query.offset(options.offset).limit(options.limit)
        result = await self.session.execute(query)
        return [self.to_entry(r) for r in result.scalars().all()], total

    async def list_all(self) -> list[HistoryEntry]:
        query = select(HistoryRecord).order_by(HistoryRecord.completed_at.desc())
        result = await self.session.execute(query)
        return [self.to_entry(r) for r in result.scalars().all()]

    async def referenced_file_ids(self) -> set[str]:
        """File ids whose blob is kept for a history entry."""
        result = await self.session.execute(
            select(HistoryRecord.file_id).where(HistoryRecord.has_file.is_(True))
        )
        return set(result.scalars().all())

    async def delete_many(self, entry_ids: Iterable[str]) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0
        result = await self.session.execute(delete(HistoryRecord).where(HistoryRecord.id.in_(ids)))
        return result.rowcount or 0

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(HistoryRecord).where(HistoryRecord.completed_at < cutoff)
        )
        return result.rowcount or 0

    async def delete_invalid(self) -> int:
        """Delete completed/reused entries that cannot serve duplicate lookups."""
        result = await self.session.execute(
            delete(HistoryRecord).where(
                HistoryRecord.status.in_(REUSABLE_STATUSES),
                or_(
                    HistoryRecord.report_sha256.is_(None),
                    HistoryRecord.report_size.is_(None),
                    HistoryRecord.report_size <= 0,
                ),
            )
        )
        return result.rowcount or 0

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(HistoryRecord))
        return result.scalar_one()

    async def clear(self) -> int:
        result = await self.session.execute(delete(HistoryRecord))
        return result.rowcount or 0

    @staticmethod
    def to_entry(record: HistoryRecord) -> HistoryEntry:
        return HistoryEntry(
            id=record.id,
            file_id=record.file_id,
            file_name=record.file_name,
            file_size=record.file_size,
            file_type=record.file_type or "application/octet-stream",
            status=TaskStatus(record.status),
            progress=record.progress or 0,
            error=record.error,
            analysis_id=record.analysis_id,
            report=AnalysisReport.from_dict(record.report) if record.report else None,
            created_at=record.created_at,
            updated_at=record.updated_at,
            completed_at=record.completed_at,
            archive_name=record.archive_name,
            has_file=bool(record.has_file),
        )
