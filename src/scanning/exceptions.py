"""
Scanning Exceptions
===================
Error taxonomy shared by the submitter, poller and scheduler.
"""

from typing import Optional


class ScanError(Exception):
    """Base exception for scan orchestration errors."""
    pass


class RateLimitSignal(ScanError):
    """
    Raised when the remote service reports that its request quota is exhausted.

    Not a failure: the task is deferred and retried after a cool-down without
    consuming its retry budget.
    """

    def __init__(self, message: str = "rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientScanError(ScanError):
    """Raised for network or server-side failures that are worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ScanServiceError(ScanError):
    """Raised for remote errors that retrying will not fix."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ScanTimeoutError(ScanError):
    """Raised when a scan has been running longer than the configured ceiling."""

    def __init__(self, message: str = "timeout"):
        super().__init__(message)
