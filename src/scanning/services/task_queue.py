"""
Task Queue
==========
In-memory collection of scan tasks. Readers get immutable snapshots; task
fields change only through ``update``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Optional

from ..models import (
    ACTIVE_STATUSES,
    REPORT_STATUSES,
    FileEntry,
    ScanTask,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

TaskListener = Callable[[ScanTask], None]

UPDATABLE_FIELDS = frozenset({"status", "progress", "error", "analysis_id", "report", "file"})
# Status changes that make the persisted queue snapshot stale
SIGNIFICANT_STATUSES = frozenset({TaskStatus.PENDING}) | ACTIVE_STATUSES


@dataclass(frozen=True)
class QueueProgress:
    """Aggregate completion of the queue."""
    total: int = 0
    completed: int = 0

    @property
    def percentage(self) -> float:
        return (self.completed / self.total) * 100 if self.total else 0.0


class TaskQueue:
    """
    Ordered task store shared by the scheduler and the presentation layer.

    Listeners registered through ``subscribe`` receive the new snapshot of
    every task that is added or updated.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, ScanTask] = {}
        self._listeners: list[TaskListener] = []
        self._unsaved = False

    # =========================================================================
    # Reads
    # =========================================================================

    def snapshot(self) -> tuple[ScanTask, ...]:
        return tuple(self._tasks.values())

    def get(self, task_id: str) -> Optional[ScanTask]:
        return self._tasks.get(task_id)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def with_status(self, *statuses: TaskStatus) -> list[ScanTask]:
        return [t for t in self._tasks.values() if t.status in statuses]

    def pending(self, exclude: Iterable[str] = ()) -> list[ScanTask]:
        """Unclaimed pending tasks, smallest content first, then insertion order."""
        excluded = set(exclude)
        candidates = [
            (task.file.size, position, task)
            for position, task in enumerate(self._tasks.values())
            if task.status == TaskStatus.PENDING and task.id not in excluded
        ]
        candidates.sort(key=lambda item: (item[0], item[1]))
        return [task for _, _, task in candidates]

    def next_pending(self, exclude: Iterable[str] = ()) -> Optional[ScanTask]:
        pending = self.pending(exclude)
        return pending[0] if pending else None

    def progress(self) -> QueueProgress:
        return QueueProgress(
            total=len(self._tasks),
            completed=sum(1 for t in self._tasks.values() if t.is_terminal),
        )

    # =========================================================================
    # Ingestion
    # =========================================================================

    def add_file(self, entry: FileEntry, archive_name: Optional[str] = None) -> ScanTask:
        return self.add_files([entry], archive_name=archive_name)[0]

    def add_files(
        self,
        entries: Iterable[FileEntry],
        replace_all: bool = False,
        archive_name: Optional[str] = None,
    ) -> list[ScanTask]:
        """
        Create pending tasks for a batch of extracted files.

        Args:
            entries: Files handed over by the extractor
            replace_all: Drop the current queue before adding
            archive_name: Archive the files were extracted from

        Returns:
            The created tasks
        """
        tasks = [ScanTask.create(entry, archive_name=archive_name) for entry in entries]
        if replace_all:
            logger.info(f"Replacing queue with {len(tasks)} new tasks")
            self._tasks.clear()
        for task in tasks:
            self._tasks[task.id] = task
        self._unsaved = True
        for task in tasks:
            self._notify(task)
        return tasks

    def load_saved(self, tasks: Iterable[ScanTask]) -> None:
        """Replace the queue with tasks restored from storage."""
        self._tasks = {task.id: task for task in tasks}
        self._unsaved = False

    def remove_task(self, task_id: str) -> bool:
        removed = self._tasks.pop(task_id, None)
        if removed is not None:
            self._unsaved = True
        return removed is not None

    def clear(self) -> None:
        self._tasks.clear()
        self._unsaved = False

    def clear_completed(self) -> int:
        """Drop finished tasks, keeping pending and in-flight ones."""
        before = len(self._tasks)
        self._tasks = {tid: t for tid, t in self._tasks.items() if not t.is_terminal}
        removed = before - len(self._tasks)
        if removed:
            self._unsaved = True
        return removed

    # =========================================================================
    # Mutation
    # =========================================================================

    def update(self, task_id: str, **changes: Any) -> ScanTask:
        """
        Apply field changes to one task and stamp ``updated_at``.

        Enforces the task invariants: progress never decreases except for the
        reset to 0 on a return to pending, ``error`` is set only in the error
        status, ``report`` only in completed/reused, and terminal tasks never
        change status again.

        Raises:
            KeyError: Unknown task id
            ValueError: Unknown field or illegal change
        """
        current = self._tasks.get(task_id)
        if current is None:
            raise KeyError(f"Task {task_id} does not exist")

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")

        status = TaskStatus(changes.get("status", current.status))
        if current.is_terminal and status != current.status:
            raise ValueError(f"Task {task_id} is {current.status.value}; cannot move to {status.value}")

        progress = int(changes.get("progress", current.progress))
        progress = max(0, min(100, progress))
        if status == TaskStatus.PENDING and progress == 0:
            pass
        elif progress < current.progress:
            logger.debug(f"Ignoring progress regression for {task_id}: {current.progress} -> {progress}")
            progress = current.progress

        error = changes.get("error", current.error)
        if status == TaskStatus.ERROR:
            error = error or "Unknown error"
        else:
            error = None

        report = changes.get("report", current.report)
        if status in REPORT_STATUSES:
            if report is None:
                raise ValueError(f"Task {task_id} cannot be {status.value} without a report")
        else:
            report = None

        updated = replace(
            current,
            status=status,
            progress=progress,
            error=error,
            report=report,
            analysis_id=changes.get("analysis_id", current.analysis_id),
            file=changes.get("file", current.file),
            updated_at=utcnow(),
        )
        self._tasks[task_id] = updated

        if "status" in changes and status in SIGNIFICANT_STATUSES:
            self._unsaved = True

        self._notify(updated)
        return updated

    # =========================================================================
    # Observation
    # =========================================================================

    def subscribe(self, listener: TaskListener) -> Callable[[], None]:
        """Register a change listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def has_unsaved_changes(self) -> bool:
        return self._unsaved

    def mark_saved(self) -> None:
        self._unsaved = False

    def _notify(self, task: ScanTask) -> None:
        for listener in list(self._listeners):
            try:
                listener(task)
            except Exception:
                logger.exception(f"Task listener failed for {task.id}")
