"""
Scanning Services Package
=========================
Building blocks of the processing pipeline.
"""

from .duplicate_detector import DuplicateDetector, Fingerprint, compute_sha256
from .rate_limiter import RateLimiter, RateLimitStatus
from .result_poller import PollDecision, PollOutcome, ResultPoller
from .task_queue import QueueProgress, TaskQueue
from .task_submitter import SubmitOutcome, SubmitResult, TaskSubmitter

__all__ = [
    "DuplicateDetector",
    "Fingerprint",
    "compute_sha256",
    "RateLimiter",
    "RateLimitStatus",
    "PollDecision",
    "PollOutcome",
    "ResultPoller",
    "QueueProgress",
    "TaskQueue",
    "SubmitOutcome",
    "SubmitResult",
    "TaskSubmitter",
]
