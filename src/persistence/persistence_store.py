"""
Persistence Store
=================
Transactional storage for the scanner: queue snapshot, scan history, content
blobs and settings.

Every public operation runs in its own transaction. Database failures
surface as ``PersistenceError``.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Any, Iterable, Optional

from scanning.models import (
    REPORT_STATUSES,
    FileEntry,
    HistoryEntry,
    ScanTask,
    Settings,
    utcnow,
)

from .config import PersistenceConfig
from .database import DatabaseManager
from .exceptions import PersistenceError
from .models import HistoryPage, SearchOptions, StorageStats
from .repositories import (
    FileRepository,
    HistoryRepository,
    QueueRepository,
    SettingsRepository,
)

logger = logging.getLogger(__name__)


class PersistenceStore:
    """
    Durable storage behind the scan queue and history.

    Features:
    - Whole-queue snapshot save/load with content blobs stored separately
    - Append-only history; blobs kept only for results with zero detections
    - Duplicate lookup by (sha256, size)
    - Daily retention cleanup with blob garbage collection
    - Settings, export and storage statistics

    Usage:
        store = PersistenceStore(PersistenceConfig.from_env())
        await store.initialize()

        await store.save_queue(queue.snapshot())
        tasks = await store.load_queue()

        await store.close()
    """

    def __init__(
        self,
        config: Optional[PersistenceConfig] = None,
        database: Optional[DatabaseManager] = None,
    ):
        self.config = config or PersistenceConfig()
        self.db = database or DatabaseManager(self.config)

    async def initialize(self) -> None:
        """Connect and create tables."""
        await self.db.connect()

    async def close(self) -> None:
        await self.db.disconnect()

    @property
    def is_initialized(self) -> bool:
        return self.db.is_connected

    # =========================================================================
    # Queue
    # =========================================================================

    async def save_queue(self, tasks: Iterable[ScanTask]) -> int:
        """
        Replace the stored queue with a snapshot.

        Content blobs are written for tasks whose bytes are available; task
        rows reference them by file id.

        Returns:
            Number of tasks saved
        """
        tasks = list(tasks)
        async with self.db.transaction() as session:
            files = FileRepository(session)
            for task in tasks:
                if task.file.content is not None:
                    await files.save(task.file)
            saved = await QueueRepository(session).replace_all(tasks)

        logger.debug(f"Saved queue snapshot with {saved} tasks")
        return saved

    async def load_queue(self) -> list[ScanTask]:
        """
        Load the stored queue, oldest first.

        Tasks whose blob is missing are kept only when terminal, since they
        can be displayed but not processed again.
        """
        async with self.db.transaction() as session:
            queue = QueueRepository(session)
            files = FileRepository(session)
            tasks = []
            dropped = 0
            for record in await queue.list_all():
                content = await files.get_content(record.file_id)
                task = QueueRepository.to_task(record, content)
                if content is None and not task.is_terminal:
                    dropped += 1
                    continue
                tasks.append(task)

        if dropped:
            logger.warning(f"Dropped {dropped} queued tasks whose content is no longer stored")
        logger.info(f"Loaded {len(tasks)} tasks from saved queue")
        return tasks

    async def clear_queue(self) -> None:
        async with self.db.transaction() as session:
            await QueueRepository(session).clear()
            await self._collect_garbage(session)

    # =========================================================================
    # History
    # =========================================================================

    async def add_to_history(self, task: ScanTask) -> HistoryEntry:
        """
        Append a terminal task to history.

        The content blob is kept only for completed/reused results with zero
        malicious detections. Retention cleanup runs at most once per
        ``cleanup_interval``.

        Raises:
            ValueError: Task is not terminal
        """
        if not task.is_terminal:
            raise ValueError(f"Task {task.id} is {task.status.value}; only terminal tasks enter history")

        keep_blob = (
            task.status in REPORT_STATUSES
            and task.report is not None
            and task.report.is_safe
            and task.file.content is not None
        )

        async with self.db.transaction() as session:
            if keep_blob:
                await FileRepository(session).save(task.file)
            entry = await HistoryRepository(session).add(task, has_file=keep_blob)

        logger.debug(f"Added {task.file.name} ({task.status.value}) to history")

        try:
            await self._maybe_cleanup()
        except PersistenceError as e:
            logger.warning(f"Scheduled history cleanup failed: {e}")
        return entry

    async def find_existing_scan(self, sha256: str, size: int) -> Optional[HistoryEntry]:
        """Return the most recent reusable history entry for a content key."""
        async with self.db.transaction() as session:
            entry = await HistoryRepository(session).find_reusable(sha256, size)

        if entry is not None and not entry.is_reusable:
            return None
        return entry

    async def get_history(self, options: Optional[SearchOptions] = None) -> HistoryPage:
        options = options or SearchOptions()
        async with self.db.transaction() as session:
            entries, total = await HistoryRepository(session).search(options)
        return HistoryPage(
            entries=entries,
            total=total,
            has_more=options.offset + len(entries) < total,
        )

    async def get_history_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        async with self.db.transaction() as session:
            return await HistoryRepository(session).get(entry_id)

    async def get_history_file(self, file_id: str) -> Optional[FileEntry]:
        """Stored blob for a history entry's file, if one was kept."""
        async with self.db.transaction() as session:
            record = await FileRepository(session).get(file_id)
            if record is None:
                return None
            return FileEntry(
                id=record.id,
                name=record.name,
                size=record.size,
                type=record.type or "application/octet-stream",
                content=record.content,
            )

    async def delete_history_entry(self, entry_id: str) -> bool:
        return await self.delete_history_entries([entry_id]) > 0

    async def delete_history_entries(self, entry_ids: Iterable[str]) -> int:
        async with self.db.transaction() as session:
            deleted = await HistoryRepository(session).delete_many(entry_ids)
            await self._collect_garbage(session)
        logger.info(f"Deleted {deleted} history entries")
        return deleted

    async def clear_history(self) -> None:
        """Delete all history, all blobs and the saved queue."""
        async with self.db.transaction() as session:
            await HistoryRepository(session).clear()
            await FileRepository(session).clear()
            await QueueRepository(session).clear()
        logger.info("Cleared history, stored files and saved queue")

    async def cleanup_old_history(self, retention_days: Optional[int] = None) -> int:
        """
        Delete history older than the retention period and orphaned blobs.

        Args:
            retention_days: Defaults to the stored setting

        Returns:
            Number of history entries deleted
        """
        async with self.db.transaction() as session:
            settings_repo = SettingsRepository(session)
            settings = await settings_repo.get() or self._default_settings()
            days = retention_days if retention_days is not None else settings.history_retention_days

            cutoff = utcnow() - timedelta(days=days)
            deleted = await HistoryRepository(session).delete_older_than(cutoff)
            await self._collect_garbage(session)
            await settings_repo.save(replace(settings, last_cleanup=utcnow()))

        if deleted:
            logger.info(f"Removed {deleted} history entries older than {days} days")
        return deleted

    async def cleanup_invalid_history_entries(self) -> int:
        """Delete completed/reused entries lacking the file metadata lookups need."""
        async with self.db.transaction() as session:
            deleted = await HistoryRepository(session).delete_invalid()
            await self._collect_garbage(session)

        if deleted:
            logger.info(f"Removed {deleted} history entries without file metadata")
        return deleted

    async def _maybe_cleanup(self) -> None:
        settings = await self.get_settings()
        if utcnow() - settings.last_cleanup >= self.config.cleanup_interval:
            await self.cleanup_old_history(settings.history_retention_days)

    @staticmethod
    async def _collect_garbage(session) -> int:
        referenced = await HistoryRepository(session).referenced_file_ids()
        referenced |= await QueueRepository(session).file_ids()
        return await FileRepository(session).delete_unreferenced(referenced)

    # =========================================================================
    # Settings
    # =========================================================================

    def _default_settings(self) -> Settings:
        return Settings(history_retention_days=self.config.default_retention_days)

    async def get_settings(self) -> Settings:
        """Stored settings, created with defaults on first access."""
        async with self.db.transaction() as session:
            repo = SettingsRepository(session)
            settings = await repo.get()
            if settings is None:
                settings = await repo.save(self._default_settings())
        return settings

    async def update_settings(self, **changes: Any) -> Settings:
        """
        Apply changes to the stored settings.

        Raises:
            ValueError: Unknown setting or invalid retention period
        """
        allowed = {"history_retention_days", "auto_start_scanning", "last_cleanup"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        if "history_retention_days" in changes and int(changes["history_retention_days"]) < 1:
            raise ValueError("history_retention_days must be at least 1")

        async with self.db.transaction() as session:
            repo = SettingsRepository(session)
            current = await repo.get() or self._default_settings()
            updated = await repo.save(replace(current, **changes))
        return updated

    async def reset_settings(self) -> Settings:
        async with self.db.transaction() as session:
            return await SettingsRepository(session).save(self._default_settings())

    # =========================================================================
    # Utilities
    # =========================================================================

    async def export_data(self) -> dict[str, Any]:
        """Queue, history and settings as plain data."""
        async with self.db.transaction() as session:
            records = await QueueRepository(session).list_all()
            history = await HistoryRepository(session).list_all()
            settings = await SettingsRepository(session).get() or self._default_settings()

        return {
            "queue": [QueueRepository.to_task(r, None).to_record() for r in records],
            "history": [entry.to_dict() for entry in history],
            "settings": settings.to_dict(),
            "export_date": utcnow().isoformat(),
        }

    async def get_storage_stats(self) -> StorageStats:
        async with self.db.transaction() as session:
            files = FileRepository(session)
            return StorageStats(
                queue_count=await QueueRepository(session).count(),
                history_count=await HistoryRepository(session).count(),
                file_count=await files.count(),
                total_file_bytes=await files.total_size(),
            )
