"""
Result Poller
=============
Polls the remote service for a scanning task's verdict.

Each call to ``poll`` issues at most one remote request and returns a
``PollDecision`` telling the scheduler when (or whether) to poll again:

    not ready        -> reschedule at the adaptive interval
    ready            -> completed, report attached
    transient error  -> reschedule with capped exponential backoff, then error
    rate limited     -> reschedule at the rate-limited interval (no retry spent)
    past the ceiling -> ScanTimeoutError, no remote request
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..clock import Clock, MonotonicClock
from ..config import PollingConfig
from ..connectors.base import ScanServiceClient
from ..exceptions import RateLimitSignal, ScanError, ScanTimeoutError, TransientScanError
from ..models import ScanTask, TaskStatus
from .rate_limiter import RateLimiter
from .task_queue import TaskQueue

logger = logging.getLogger(__name__)

LONG_RUNNING_BASE_PROGRESS = 60
LONG_RUNNING_MAX_BOOST = 10


class PollOutcome(str, Enum):
    COMPLETED = "completed"
    NOT_READY = "not_ready"
    RETRY = "retry"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass(frozen=True)
class PollDecision:
    """Outcome of one poll and, unless terminal, when to poll next."""
    outcome: PollOutcome
    delay: Optional[float] = None
    retries: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (PollOutcome.COMPLETED, PollOutcome.FAILED)


class ResultPoller:
    """Drives a scanning task to completed or error, one poll at a time."""

    def __init__(
        self,
        queue: TaskQueue,
        client: ScanServiceClient,
        rate_limiter: RateLimiter,
        config: Optional[PollingConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.client = client
        self.rate_limiter = rate_limiter
        self.config = config or PollingConfig()
        self.clock = clock or MonotonicClock()

    # =========================================================================
    # Policy
    # =========================================================================

    def next_interval(self, elapsed: float, in_flight: int) -> float:
        """
        Adaptive delay before the next poll of a not-ready scan.

        Args:
            elapsed: Seconds since the task entered scanning
            in_flight: Number of tasks currently claimed by the scheduler
        """
        cfg = self.config
        if elapsed > cfg.very_long_running_threshold:
            return cfg.very_long_running_interval
        if elapsed > cfg.long_running_threshold:
            return cfg.long_running_interval
        single = in_flight <= 1
        if single and elapsed < cfg.small_scan_threshold:
            return cfg.single_small_interval
        if single:
            return cfg.single_interval
        if elapsed < cfg.small_scan_threshold:
            return cfg.batch_small_interval
        return cfg.poll_interval

    def retry_delay(self, attempt: int) -> float:
        delay = self.config.poll_interval * (self.config.retry_multiplier ** attempt)
        return min(delay, self.config.max_retry_delay)

    def elapsed(self, started_at: float) -> float:
        return max(0.0, self.clock.now() - started_at)

    def is_timed_out(self, started_at: float) -> bool:
        return self.elapsed(started_at) >= self.config.max_scan_time

    def waiting_progress(self, task: ScanTask, elapsed: float) -> int:
        """Progress for a scan that is still running; grows slowly and never reaches 100."""
        progress = task.progress + 1
        if elapsed > self.config.long_running_threshold:
            boost = min(LONG_RUNNING_MAX_BOOST, int(elapsed // 60))
            progress = max(progress, LONG_RUNNING_BASE_PROGRESS + boost)
        return min(self.config.progress_cap, progress)

    # =========================================================================
    # Polling
    # =========================================================================

    async def poll(
        self,
        task_id: str,
        started_at: float,
        retries: int = 0,
        in_flight: int = 1,
    ) -> PollDecision:
        """
        Poll once for a task's result and apply the outcome to the queue.

        Args:
            task_id: Task in scanning status
            started_at: Clock time the task entered scanning
            retries: Transient failures already spent on this task
            in_flight: Number of tasks currently claimed by the scheduler

        Returns:
            PollDecision for the scheduler

        Raises:
            ScanTimeoutError: Scan has run past the configured ceiling
            ScanError: Non-retryable remote failure
        """
        task = self.queue.get(task_id)
        if task is None or task.status != TaskStatus.SCANNING:
            raise ScanError(f"Task {task_id} is not scanning")
        if not task.analysis_id:
            raise ScanError(f"Task {task_id} has no analysis id")

        if self.is_timed_out(started_at):
            raise ScanTimeoutError()

        await self.rate_limiter.acquire()
        try:
            result = await self.client.poll(task.analysis_id)
        except RateLimitSignal as signal:
            cooldown = signal.retry_after or self.config.rate_limited_poll_interval
            self.rate_limiter.defer(cooldown)
            logger.warning(f"Rate limited while polling {task.file.name}, waiting {cooldown:.0f}s")
            return PollDecision(
                PollOutcome.RATE_LIMITED,
                delay=self.config.rate_limited_poll_interval,
                retries=retries,
            )
        except TransientScanError as e:
            if retries >= self.config.max_retries:
                logger.error(f"Polling {task.file.name} failed after {retries} retries: {e}")
                self.queue.update(task_id, status=TaskStatus.ERROR, error=str(e))
                return PollDecision(PollOutcome.FAILED, retries=retries)
            delay = self.retry_delay(retries)
            logger.warning(
                f"Polling {task.file.name} failed ({e}); "
                f"retry {retries + 1}/{self.config.max_retries} in {delay:.0f}s"
            )
            return PollDecision(PollOutcome.RETRY, delay=delay, retries=retries + 1)

        elapsed = self.elapsed(started_at)

        if result.ready and result.report is not None:
            report = result.report
            if task.file.sha256:
                report = report.with_file_info(
                    sha256=task.file.sha256,
                    size=task.file.size,
                    file_type=task.file.type,
                    filename=task.file.name,
                )
            self.queue.update(task_id, status=TaskStatus.COMPLETED, progress=100, report=report)
            logger.info(
                f"Scan of {task.file.name} completed in {elapsed:.0f}s: "
                f"{report.detection_count} detections"
            )
            return PollDecision(PollOutcome.COMPLETED, retries=retries)

        self.queue.update(task_id, progress=self.waiting_progress(task, elapsed))
        delay = self.next_interval(elapsed, in_flight)
        logger.debug(f"Scan of {task.file.name} in progress ({elapsed:.0f}s elapsed), next poll in {delay:.0f}s")
        return PollDecision(PollOutcome.NOT_READY, delay=delay, retries=retries)
