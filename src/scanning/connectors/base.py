"""
Scan Service Connector Interface
================================
Contract between the orchestration core and a remote content-scanning
service.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

from ..models import AnalysisReport


@dataclass(frozen=True)
class PollResult:
    """Outcome of one poll. ``report`` is set once ``ready`` is True."""
    ready: bool
    report: Optional[AnalysisReport] = None
    status: str = "queued"


class ScanServiceClient(Protocol):
    """
    Remote scanning service.

    Both calls raise ``RateLimitSignal`` when the service refuses the request
    for quota reasons, ``TransientScanError`` for network or server failures
    and ``ScanServiceError`` for anything retrying will not fix.
    """

    async def submit(self, content: bytes, filename: str = "file") -> str:
        """Upload content for analysis and return the analysis id."""
        ...

    async def poll(self, analysis_id: str) -> PollResult:
        """Fetch the current state of an analysis."""
        ...

    async def close(self) -> None:
        ...
