"""
Scanning Layer
==============
Rate-limited submission of extracted files to a remote scanning service,
with duplicate detection, result polling and durable history.

Quick Start:
------------
```python
from scanning.scan_service import ScanService
from scanning.models import FileEntry

service = ScanService.from_env()
await service.initialize()
await service.add_files([FileEntry(id="f1", name="a.exe", size=len(data), content=data)])
await service.wait_until_idle()
```

The service, scheduler and pipeline services live in their own modules and
are not re-exported here, so that ``persistence`` can depend on
``scanning.models`` without an import cycle.
"""

from .clock import Clock, MonotonicClock
from .config import (
    PollingConfig,
    ProcessingConfig,
    RateLimitConfig,
    ScannerConfig,
    VirusTotalConfig,
)
from .exceptions import (
    RateLimitSignal,
    ScanError,
    ScanServiceError,
    ScanTimeoutError,
    TransientScanError,
)

__all__ = [
    "Clock",
    "MonotonicClock",
    "PollingConfig",
    "ProcessingConfig",
    "RateLimitConfig",
    "ScannerConfig",
    "VirusTotalConfig",
    "RateLimitSignal",
    "ScanError",
    "ScanServiceError",
    "ScanTimeoutError",
    "TransientScanError",
]
