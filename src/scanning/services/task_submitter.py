"""
Task Submitter
==============
Uploads non-duplicate content to the remote scanning service under rate
limiter admission and moves the task into the scanning state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..clock import Clock, MonotonicClock
from ..config import PollingConfig, RateLimitConfig
from ..connectors.base import ScanServiceClient
from ..exceptions import RateLimitSignal, ScanError, TransientScanError
from ..models import TaskStatus
from .rate_limiter import RateLimiter
from .task_queue import TaskQueue

logger = logging.getLogger(__name__)

UPLOADING_PROGRESS = 10
SUBMITTED_PROGRESS_SINGLE = 60
SUBMITTED_PROGRESS_BATCH = 50


class SubmitOutcome(str, Enum):
    """What happened to a submission attempt."""
    SUBMITTED = "submitted"  # Task is scanning; schedule its first poll
    DEFERRED = "deferred"  # Remote rate limit; task is back to pending
    ABANDONED = "abandoned"  # Processing stopped before the upload was issued


@dataclass(frozen=True)
class SubmitResult:
    outcome: SubmitOutcome
    analysis_id: Optional[str] = None
    started_at: Optional[float] = None
    first_poll_delay: float = 0.0
    cooldown: float = 0.0


class TaskSubmitter:
    """
    Submits one task's content to the remote service.

    Transient upload failures are retried with capped exponential backoff;
    every attempt takes its own rate limiter admission. A rate-limit signal
    from the service sends the task back to pending.
    """

    def __init__(
        self,
        queue: TaskQueue,
        client: ScanServiceClient,
        rate_limiter: RateLimiter,
        polling_config: Optional[PollingConfig] = None,
        rate_limit_config: Optional[RateLimitConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.client = client
        self.rate_limiter = rate_limiter
        self.polling = polling_config or PollingConfig()
        self.rate_limit = rate_limit_config or rate_limiter.config
        self.clock = clock or MonotonicClock()

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry ``attempt`` (0-based), capped at ``max_retry_delay``."""
        delay = self.polling.poll_interval * (self.polling.retry_multiplier ** attempt)
        return min(delay, self.polling.max_retry_delay)

    async def submit(
        self,
        task_id: str,
        single_file: bool = False,
        is_active: Callable[[], bool] = lambda: True,
    ) -> SubmitResult:
        """
        Upload a task and transition it to scanning.

        Args:
            task_id: Task already fingerprinted and known not to be a duplicate
            single_file: Whether this is the only task in flight; tunes
                progress and the first poll delay
            is_active: Returns False once processing has been stopped

        Returns:
            SubmitResult describing the outcome

        Raises:
            ScanError: Content missing or a non-retryable remote failure
        """
        task = self.queue.get(task_id)
        if task is None:
            raise ScanError(f"Task {task_id} disappeared before upload")
        if task.file.content is None:
            raise ScanError(f"Content for {task.file.name} is not available")

        self.queue.update(task_id, status=TaskStatus.UPLOADING, progress=UPLOADING_PROGRESS)

        attempt = 0
        while True:
            if not is_active():
                logger.info(f"Processing stopped before uploading {task.file.name}")
                self._revert(task_id)
                return SubmitResult(SubmitOutcome.ABANDONED)

            await self.rate_limiter.acquire()
            try:
                analysis_id = await self.client.submit(task.file.content, task.file.name)
                break
            except RateLimitSignal as signal:
                cooldown = signal.retry_after or self.rate_limit.rate_limited_cooldown
                self.rate_limiter.defer(cooldown)
                self._revert(task_id)
                logger.warning(
                    f"Remote rate limit while uploading {task.file.name}; "
                    f"deferring for {cooldown:.0f}s"
                )
                return SubmitResult(SubmitOutcome.DEFERRED, cooldown=cooldown)
            except TransientScanError as e:
                if attempt >= self.polling.max_retries:
                    logger.error(f"Upload of {task.file.name} failed after {attempt + 1} attempts: {e}")
                    raise
                delay = self.retry_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Upload of {task.file.name} failed ({e}); "
                    f"retry {attempt}/{self.polling.max_retries} in {delay:.0f}s"
                )
                await self.clock.sleep(delay)

        started_at = self.clock.now()
        progress = SUBMITTED_PROGRESS_SINGLE if single_file else SUBMITTED_PROGRESS_BATCH
        self.queue.update(
            task_id,
            status=TaskStatus.SCANNING,
            analysis_id=analysis_id,
            progress=progress,
        )

        first_poll = self.polling.single_file_first_poll if single_file else self.polling.poll_interval
        logger.info(f"Submitted {task.file.name} as analysis {analysis_id}; first poll in {first_poll:.0f}s")
        return SubmitResult(
            SubmitOutcome.SUBMITTED,
            analysis_id=analysis_id,
            started_at=started_at,
            first_poll_delay=first_poll,
        )

    def _revert(self, task_id: str) -> None:
        self.queue.update(task_id, status=TaskStatus.PENDING, progress=0)
