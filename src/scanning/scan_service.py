"""
Scan Service
============
Application wiring: builds the rate limiter, store, remote client, queue and
scheduler from configuration and exposes the operations a front end needs.

Startup sequence (``initialize``):
1. Open the store
2. Prune history entries that cannot serve duplicate lookups
3. Read settings
4. Restore the saved queue
5. Start processing when auto-start is on and work is pending

Any persistence failure during startup leaves the service running without
durable storage.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from monitoring import LoggingConfig, configure_logging
from persistence import (
    HistoryPage,
    PersistenceConfig,
    PersistenceError,
    PersistenceStore,
    SearchOptions,
    StorageStats,
)

from .clock import Clock, MonotonicClock
from .config import ScannerConfig
from .connectors import ScanServiceClient, VirusTotalClient
from .models import FileEntry, HistoryEntry, ScanTask, Settings
from .processing_scheduler import ProcessingScheduler
from .services import (
    DuplicateDetector,
    QueueProgress,
    RateLimiter,
    RateLimitStatus,
    ResultPoller,
    TaskQueue,
    TaskSubmitter,
)

logger = logging.getLogger(__name__)


class ScanService:
    """
    Scanner facade.

    Usage:
        service = ScanService.from_env()
        await service.initialize()

        await service.add_files(extracted_entries, archive_name="upload.zip")
        await service.wait_until_idle()

        page = await service.get_history(SearchOptions(has_threats=True))
        await service.close()
    """

    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        store: Optional[PersistenceStore] = None,
        client: Optional[ScanServiceClient] = None,
        clock: Optional[Clock] = None,
        persistence_config: Optional[PersistenceConfig] = None,
    ):
        self.config = config or ScannerConfig.from_env()
        self.clock = clock or MonotonicClock()
        self.store = store or PersistenceStore(persistence_config or PersistenceConfig.from_env())
        self.client = client or VirusTotalClient(self.config.virustotal)

        self.rate_limiter = RateLimiter(self.config.rate_limit, self.clock)
        self.queue = TaskQueue()
        self.detector = DuplicateDetector()
        self.submitter = TaskSubmitter(
            self.queue,
            self.client,
            self.rate_limiter,
            polling_config=self.config.polling,
            rate_limit_config=self.config.rate_limit,
            clock=self.clock,
        )
        self.poller = ResultPoller(
            self.queue,
            self.client,
            self.rate_limiter,
            config=self.config.polling,
            clock=self.clock,
        )
        self.scheduler = ProcessingScheduler(
            self.queue,
            self.detector,
            self.submitter,
            self.poller,
            self.rate_limiter,
            config=self.config.processing,
            clock=self.clock,
        )

        self.settings = Settings()
        self._durable = False
        self._autosave_task: Optional[asyncio.Task] = None

    @classmethod
    def from_env(cls, logging_config: Optional[LoggingConfig] = None) -> "ScanService":
        """Build a service from environment configuration and set up logging."""
        configure_logging(logging_config or LoggingConfig.from_env())
        return cls(
            config=ScannerConfig.from_env(),
            persistence_config=PersistenceConfig.from_env(),
        )

    @property
    def is_durable(self) -> bool:
        """Whether storage is available."""
        return self._durable

    @property
    def is_processing(self) -> bool:
        return self.scheduler.is_processing

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Open storage, restore state and auto-start processing."""
        try:
            await self.store.initialize()
        except PersistenceError as e:
            logger.error(f"Storage unavailable, continuing without persistence: {e}")
            return

        self._durable = True
        self.detector.store = self.store
        self.scheduler.store = self.store

        try:
            removed = await self.store.cleanup_invalid_history_entries()
            if removed:
                logger.info(f"Pruned {removed} history entries unusable for duplicate detection")
        except PersistenceError as e:
            logger.warning(f"History maintenance failed: {e}")

        try:
            self.settings = await self.store.get_settings()
        except PersistenceError as e:
            logger.warning(f"Could not read settings, using defaults: {e}")

        try:
            self.queue.load_saved(await self.store.load_queue())
        except PersistenceError as e:
            logger.warning(f"Could not restore saved queue: {e}")

        if self.settings.auto_start_scanning and self.queue.pending():
            logger.info("Resuming processing of saved queue")
            await self.start_processing()

    async def close(self) -> None:
        await self.stop_processing(wait=True)
        await self.client.close()
        if self._durable:
            await self.store.close()
            self._durable = False

    async def validate_api_key(self) -> bool:
        validate = getattr(self.client, "validate_api_key", None)
        if validate is None:
            return True
        return await validate()

    # =========================================================================
    # Queue
    # =========================================================================

    async def add_files(
        self,
        entries: Iterable[FileEntry],
        replace_all: bool = False,
        archive_name: Optional[str] = None,
    ) -> list[ScanTask]:
        """
        Queue a batch of extracted files.

        Args:
            entries: Files handed over by the extractor
            replace_all: Replace the current queue instead of appending
            archive_name: Archive the files came from

        Returns:
            The created tasks
        """
        if replace_all:
            await self.stop_processing(wait=True)
            self.scheduler.reset()

        tasks = self.queue.add_files(entries, replace_all=replace_all, archive_name=archive_name)
        logger.info(f"Queued {len(tasks)} files" + (f" from {archive_name}" if archive_name else ""))
        await self.save_queue()

        if tasks and self.settings.auto_start_scanning:
            await self.start_processing()
        return tasks

    async def remove_task(self, task_id: str) -> bool:
        self.scheduler.forget(task_id)
        removed = self.queue.remove_task(task_id)
        if removed:
            await self.save_queue()
        return removed

    async def clear_queue(self) -> None:
        await self.stop_processing(wait=True)
        self.scheduler.reset()
        self.queue.clear()
        if self._durable:
            try:
                await self.store.clear_queue()
            except PersistenceError as e:
                logger.warning(f"Could not clear saved queue: {e}")

    async def clear_completed(self) -> int:
        removed = self.queue.clear_completed()
        if removed:
            await self.save_queue()
        return removed

    def progress(self) -> QueueProgress:
        return self.queue.progress()

    def subscribe(self, listener: Callable[[ScanTask], None]) -> Callable[[], None]:
        return self.queue.subscribe(listener)

    def rate_limit_status(self) -> RateLimitStatus:
        return self.rate_limiter.status()

    async def save_queue(self) -> bool:
        """Persist the queue snapshot; failures are logged and reported as False."""
        if not self._durable:
            return False
        try:
            await self.store.save_queue(self.queue.snapshot())
        except PersistenceError as e:
            logger.warning(f"Failed to save queue: {e}")
            return False
        self.queue.mark_saved()
        return True

    # =========================================================================
    # Processing
    # =========================================================================

    async def start_processing(self) -> bool:
        if self.scheduler.is_stopping:
            await self.scheduler.join()
        if not self.scheduler.is_processing:
            # Collect the previous run's autosave so its failure is not lost
            await self._join_autosave()

        started = await self.scheduler.start()
        if started:
            self._autosave_task = asyncio.create_task(self._autosave_loop())
        return started

    async def stop_processing(self, wait: bool = True) -> None:
        await self.scheduler.stop(wait=wait)
        if wait:
            await self._join_autosave()

    async def wait_until_idle(self) -> None:
        """Wait for the current processing run to finish on its own or be stopped."""
        await self.scheduler.join()
        await self._join_autosave()

    async def _join_autosave(self) -> None:
        task, self._autosave_task = self._autosave_task, None
        if task is not None:
            await task

    async def _autosave_loop(self) -> None:
        """Save the queue periodically while processing and once more when it stops."""
        processing = self.config.processing
        while True:
            interval = (
                processing.single_file_autosave_interval
                if len(self.queue) <= 1
                else processing.autosave_interval
            )
            stopped = await self.scheduler.wait_stopped(interval)
            if stopped or self.queue.has_unsaved_changes():
                await self.save_queue()
            if stopped:
                return

    # =========================================================================
    # History, settings and utilities
    # =========================================================================

    def _require_store(self) -> PersistenceStore:
        if not self._durable:
            raise PersistenceError("Storage is not available")
        return self.store

    async def get_history(self, options: Optional[SearchOptions] = None) -> HistoryPage:
        return await self._require_store().get_history(options)

    async def get_history_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        return await self._require_store().get_history_entry(entry_id)

    async def get_history_file(self, file_id: str) -> Optional[FileEntry]:
        return await self._require_store().get_history_file(file_id)

    async def delete_history_entry(self, entry_id: str) -> bool:
        return await self._require_store().delete_history_entry(entry_id)

    async def delete_history_entries(self, entry_ids: Iterable[str]) -> int:
        return await self._require_store().delete_history_entries(entry_ids)

    async def clear_history(self) -> None:
        """Clear history, stored files and the queue."""
        store = self._require_store()
        await self.stop_processing(wait=True)
        self.scheduler.reset()
        self.queue.clear()
        await store.clear_history()

    async def get_settings(self) -> Settings:
        if self._durable:
            self.settings = await self.store.get_settings()
        return self.settings

    async def update_settings(self, **changes: Any) -> Settings:
        self.settings = await self._require_store().update_settings(**changes)
        return self.settings

    async def reset_settings(self) -> Settings:
        self.settings = await self._require_store().reset_settings()
        return self.settings

    async def export_data(self) -> dict[str, Any]:
        return await self._require_store().export_data()

    async def get_storage_stats(self) -> StorageStats:
        return await self._require_store().get_storage_stats()
