"""
Processing Scheduler
====================
The control loop that drives queued tasks through duplicate detection,
submission and result polling.

One loop owns all in-flight bookkeeping:
- the claim set (task ids being hashed, uploaded or scanned; a claimed task
  is never picked up again)
- the pipeline set (claimed tasks still being hashed or uploaded)
- the scan-start map used for adaptive poll intervals and timeouts
- the poll schedule (task id -> next due time and spent retries)
- held tasks, whose content matches a scan still in flight

Each iteration expires overdue scans, then starts the next pending task
(smallest first), otherwise serves the most overdue poll, otherwise sleeps
until the next poll or checks whether processing can stop on its own. A poll
that has been due for ``max_poll_lag`` seconds goes ahead of new uploads.

``max_workers`` bounds the hash/upload pipelines only; scans waiting for
their next poll do not count, so the next file is uploaded while earlier ones
are still being analyzed. The default of one worker hashes and uploads a
single file at a time. With ``max_workers > 1`` that many loops share the
same bookkeeping and RateLimiter, and selection and claiming happen under the
limiter's lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Optional

from persistence.exceptions import PersistenceError

from .clock import Clock, MonotonicClock
from .config import ProcessingConfig
from .exceptions import ScanError, ScanTimeoutError
from .models import ScanTask, TaskStatus
from .services.duplicate_detector import DuplicateDetector, Fingerprint
from .services.rate_limiter import RateLimiter
from .services.result_poller import ResultPoller
from .services.task_queue import TaskQueue
from .services.task_submitter import SubmitOutcome, TaskSubmitter

if TYPE_CHECKING:
    from persistence import PersistenceStore

logger = logging.getLogger(__name__)

HASHING_PROGRESS = 5


@dataclass(frozen=True)
class ScheduledPoll:
    """Next poll of a scanning task."""
    task_id: str
    due: float
    retries: int = 0


@dataclass(frozen=True)
class SchedulerStatus:
    is_processing: bool
    in_flight: int
    scheduled_polls: int
    pending: int


class ProcessingScheduler:
    """
    Runs the processing loop and manages its start/stop lifecycle.

    Usage:
        scheduler = ProcessingScheduler(queue, detector, submitter, poller, limiter, store)
        await scheduler.start()
        ...
        await scheduler.stop(wait=True)

    Stopping is cooperative: calls already issued to the remote service are
    allowed to finish, but nothing new is submitted or polled afterwards.
    """

    def __init__(
        self,
        queue: TaskQueue,
        detector: DuplicateDetector,
        submitter: TaskSubmitter,
        poller: ResultPoller,
        rate_limiter: RateLimiter,
        store: Optional["PersistenceStore"] = None,
        config: Optional[ProcessingConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.detector = detector
        self.submitter = submitter
        self.poller = poller
        self.rate_limiter = rate_limiter
        self.store = store
        self.config = config or ProcessingConfig()
        self.clock = clock or MonotonicClock()

        self._claimed: set[str] = set()
        self._pipelines: set[str] = set()
        self._held: dict[str, str] = {}  # held task id -> claimed twin id
        self._scan_started: dict[str, float] = {}
        self._polls: dict[str, ScheduledPoll] = {}
        self._recorded: set[str] = set()

        self._running = False
        self._disabled = True
        self._stop_event: Optional[asyncio.Event] = None
        self._runner: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_processing(self) -> bool:
        return self._running

    @property
    def is_stopping(self) -> bool:
        """Stop was requested and the loop has not exited yet."""
        return self._running and self._disabled

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._claimed)

    def scan_started_at(self, task_id: str) -> Optional[float]:
        return self._scan_started.get(task_id)

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_processing=self._running,
            in_flight=len(self._claimed),
            scheduled_polls=len(self._polls),
            pending=len(self.queue.pending()),
        )

    async def start(self) -> bool:
        """
        Start the processing loop.

        Returns:
            False if a loop is already running
        """
        if self.is_stopping:
            # Previous run is winding down; let it exit before starting over
            await self.join()
        if self._running:
            logger.debug("Processing already running")
            return False

        self._running = True
        self._disabled = False
        self._stop_event = asyncio.Event()
        self._recover()

        workers = self.config.max_workers
        logger.info(f"Processing started ({workers} worker{'s' if workers > 1 else ''})")
        self._runner = asyncio.create_task(self._run(workers))
        return True

    async def stop(self, wait: bool = False) -> None:
        """
        Stop issuing new work.

        Args:
            wait: Also wait for the loop to finish its current step
        """
        if not self._running:
            return
        logger.info("Stopping processing")
        self._disabled = True
        if self._stop_event is not None:
            self._stop_event.set()
        if wait:
            await self.join()

    async def join(self) -> None:
        """Wait until the processing loop has exited."""
        if self._runner is not None:
            await asyncio.shield(self._runner)

    async def wait_stopped(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the loop to exit; True if it has."""
        if self._runner is None or self._runner.done():
            return True
        done, _ = await asyncio.wait({self._runner}, timeout=timeout)
        return bool(done)

    def forget(self, task_id: str) -> None:
        """Drop scheduler bookkeeping for a task removed from the queue."""
        self._release(task_id)
        self._held.pop(task_id, None)
        self._recorded.discard(task_id)

    def reset(self) -> None:
        """Forget all bookkeeping; used when the queue is cleared."""
        self._polls.clear()
        self._scan_started.clear()
        self._claimed.clear()
        self._pipelines.clear()
        self._held.clear()
        self._recorded.clear()

    def _release(self, task_id: str) -> None:
        """Drop a task's claim and let tasks held on its content go."""
        self._polls.pop(task_id, None)
        self._scan_started.pop(task_id, None)
        self._claimed.discard(task_id)
        self._pipelines.discard(task_id)
        for held_id, twin_id in list(self._held.items()):
            if twin_id == task_id:
                del self._held[held_id]

    async def _run(self, workers: int) -> None:
        try:
            if workers <= 1:
                await self._loop(0)
            else:
                await asyncio.gather(*(self._loop(i) for i in range(workers)))
        finally:
            self._running = False
            self._disabled = True
            logger.info("Processing stopped")

    def _recover(self) -> None:
        """Bring tasks left mid-pipeline by a previous run back under control."""
        for task in self.queue.snapshot():
            if task.id in self._claimed:
                continue
            if task.status in (TaskStatus.HASHING, TaskStatus.UPLOADING):
                self.queue.update(task.id, status=TaskStatus.PENDING, progress=0)
            elif task.status == TaskStatus.SCANNING:
                if task.analysis_id:
                    now = self.clock.now()
                    self._claimed.add(task.id)
                    self._scan_started.setdefault(task.id, now)
                    self._polls[task.id] = ScheduledPoll(task.id, due=now)
                    logger.info(f"Resuming polling for {task.file.name}")
                else:
                    self.queue.update(task.id, status=TaskStatus.PENDING, progress=0)

    # =========================================================================
    # Control loop
    # =========================================================================

    async def _loop(self, worker_id: int) -> None:
        while not self._disabled:
            try:
                delay = await self._step()
            except Exception:
                logger.exception(f"Processing worker {worker_id} iteration failed")
                delay = self._idle_wait()

            if delay is None or self._disabled:
                break
            await self._pause(delay)

    async def _step(self) -> Optional[float]:
        """
        Run one iteration.

        Returns:
            Seconds to wait before the next iteration, or None to stop
        """
        await self._expire_overdue()

        now = self.clock.now()
        poll: Optional[ScheduledPoll] = None
        task_id: Optional[str] = None

        with self.rate_limiter.lock:
            poll = self._next_due_poll(now)
            task = None
            if poll is None or now - poll.due < self.config.max_poll_lag:
                task = self._next_task()

            if task is not None:
                if not self.rate_limiter.admit():
                    return self.rate_limiter.wait_time()
                self._claimed.add(task.id)
                self._pipelines.add(task.id)
                task_id = task.id
            elif poll is not None:
                if not self.rate_limiter.admit():
                    return self.rate_limiter.wait_time()
                del self._polls[poll.task_id]

        if task_id is not None:
            single = self._single_file()
            await self._process_task(task_id, single)
            return 0.0 if single else self.config.batch_submit_delay

        if poll is not None:
            await self._serve_poll(poll)
            return 0.0

        if self._has_work():
            return self._next_wake(now)

        # Nothing to do; re-check after a settle delay before stopping
        await self._pause(self.config.settle_delay)
        if self._disabled:
            return None
        if self._has_work():
            return 0.0
        logger.info("No pending or in-flight tasks; processing complete")
        self._disabled = True
        return None

    async def _pause(self, seconds: float) -> None:
        """Sleep on the injected clock, waking early when processing is stopped."""
        if seconds <= 0 or self._stop_event is None:
            await asyncio.sleep(0)
            return
        if self._stop_event.is_set():
            return

        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        _, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for future in pending:
            future.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def _single_file(self) -> bool:
        return len(self.queue) <= 1

    def _idle_wait(self) -> float:
        return self.config.single_file_wait if self._single_file() else self.config.batch_wait

    def _has_work(self) -> bool:
        return bool(self._claimed or self._polls or self.queue.pending())

    def _next_task(self) -> Optional[ScanTask]:
        if len(self._pipelines) >= self.config.max_workers:
            return None
        return self.queue.next_pending(exclude=self._claimed.union(self._held))

    def _scan_twin(self, task_id: str, fp: Fingerprint) -> Optional[str]:
        """Claimed task with the same content, if any."""
        for other_id in self._claimed:
            if other_id == task_id:
                continue
            other = self.queue.get(other_id)
            if (
                other is not None
                and (other.file.sha256 or "").lower() == fp.sha256
                and other.file.size == fp.size
            ):
                return other_id
        return None

    def _next_due_poll(self, now: float) -> Optional[ScheduledPoll]:
        due = [p for p in self._polls.values() if p.due <= now]
        return min(due, key=lambda p: p.due) if due else None

    def _next_wake(self, now: float) -> float:
        idle = self._idle_wait()
        if not self._polls:
            return idle
        next_due = min(p.due for p in self._polls.values())
        return min(idle, max(0.0, next_due - now))

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _process_task(self, task_id: str, single: bool) -> None:
        """Hash, dedup and submit one claimed task. Never raises."""
        try:
            task = self.queue.update(task_id, status=TaskStatus.HASHING, progress=HASHING_PROGRESS)
            fp, match = await self.detector.check(task)
            task = self.queue.update(task_id, file=replace(task.file, sha256=fp.sha256))

            if match is not None:
                self.queue.update(task_id, **self.detector.reused_changes(task, match, fp))
                await self._finalize(task_id)
                return

            twin_id = self._scan_twin(task_id, fp)
            if twin_id is not None:
                # Picked up again once the twin is finalized and in history
                logger.info(f"{task.file.name} matches a scan in flight; waiting for its result")
                self._held[task_id] = twin_id
                self._claimed.discard(task_id)
                self.queue.update(task_id, status=TaskStatus.PENDING, progress=0)
                return

            result = await self.submitter.submit(
                task_id,
                single_file=single,
                is_active=lambda: not self._disabled,
            )
            if result.outcome == SubmitOutcome.SUBMITTED:
                self._scan_started[task_id] = result.started_at
                self._polls[task_id] = ScheduledPoll(
                    task_id, due=result.started_at + result.first_poll_delay
                )
            else:
                self._claimed.discard(task_id)
        except Exception as e:
            await self._fail(task_id, e)
        finally:
            self._pipelines.discard(task_id)

    async def _serve_poll(self, poll: ScheduledPoll) -> None:
        task_id = poll.task_id
        started_at = self._scan_started.get(task_id)
        if started_at is None:
            started_at = self.clock.now()
            self._scan_started[task_id] = started_at

        try:
            decision = await self.poller.poll(
                task_id,
                started_at,
                retries=poll.retries,
                in_flight=len(self._claimed),
            )
        except Exception as e:
            await self._fail(task_id, e)
            return

        if decision.is_terminal:
            await self._finalize(task_id)
            return

        if task_id not in self._claimed:
            # Removed from the queue while the poll was in flight
            return
        self._polls[task_id] = ScheduledPoll(
            task_id,
            due=self.clock.now() + (decision.delay or 0.0),
            retries=decision.retries,
        )

    async def _expire_overdue(self) -> None:
        overdue = [tid for tid, started in self._scan_started.items()
                   if tid in self._polls and self.poller.is_timed_out(started)]
        for task_id in overdue:
            self._polls.pop(task_id, None)
            task = self.queue.get(task_id)
            if task is not None and task.status == TaskStatus.SCANNING:
                await self._fail(task_id, ScanTimeoutError())
            else:
                await self._finalize(task_id)

    async def _fail(self, task_id: str, error: Exception) -> None:
        """Record a pipeline failure on the task; the loop carries on."""
        message = str(error) or error.__class__.__name__
        if isinstance(error, ScanError):
            logger.error(f"Task {task_id} failed: {message}")
        else:
            logger.exception(f"Unexpected failure processing task {task_id}")

        task = self.queue.get(task_id)
        if task is not None and not task.is_terminal:
            try:
                self.queue.update(task_id, status=TaskStatus.ERROR, error=message)
            except (KeyError, ValueError):
                logger.exception(f"Could not mark task {task_id} as failed")
        await self._finalize(task_id)

    async def _finalize(self, task_id: str) -> None:
        """Release a task's claim and append it to history once it is terminal."""
        self._release(task_id)

        task = self.queue.get(task_id)
        if task is None or not task.is_terminal or task_id in self._recorded:
            return
        self._recorded = {tid for tid in self._recorded if tid in self.queue}
        self._recorded.add(task_id)

        if self.store is None:
            return
        try:
            await self.store.add_to_history(task)
        except PersistenceError as e:
            logger.warning(f"Could not record {task.file.name} in history: {e}")
