"""
File Repository
===============
Content blobs keyed by file id.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from scanning.models import FileEntry, utcnow

from ..models import FileRecord

logger = logging.getLogger(__name__)


class FileRepository:
    """Repository for content blobs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save(self, entry: FileEntry) -> None:
        """Insert or overwrite the blob of a file entry."""
        if entry.content is None:
            raise ValueError(f"File {entry.id} has no content to store")
        await self.session.merge(FileRecord(
            id=entry.id,
            name=entry.name,
            type=entry.type,
            size=len(entry.content),
            content=entry.content,
            created_at=utcnow(),
        ))

    async def get(self, file_id: str) -> Optional[FileRecord]:
        return await self.session.get(FileRecord, file_id)

    async def get_content(self, file_id: str) -> Optional[bytes]:
        result = await self.session.execute(
            select(FileRecord.content).where(FileRecord.id == file_id)
        )
        return result.scalar_one_or_none()

    async def ids(self) -> set[str]:
        result = await self.session.execute(select(FileRecord.id))
        return set(result.scalars().all())

    async def delete_many(self, file_ids: Iterable[str]) -> int:
        ids = list(file_ids)
        if not ids:
            return 0
        result = await self.session.execute(delete(FileRecord).where(FileRecord.id.in_(ids)))
        return result.rowcount or 0

    async def delete_unreferenced(self, referenced: set[str]) -> int:
        """Delete every blob whose id is not in ``referenced``."""
        orphaned = await self.ids() - referenced
        deleted = await self.delete_many(orphaned)
        if deleted:
            logger.info(f"Removed {deleted} unreferenced file blobs")
        return deleted

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(FileRecord))
        return result.scalar_one()

    async def total_size(self) -> int:
        result = await self.session.execute(select(func.coalesce(func.sum(FileRecord.size), 0)))
        return int(result.scalar_one())

    async def clear(self) -> int:
        result = await self.session.execute(delete(FileRecord))
        return result.rowcount or 0
