"""
Pytest Configuration and Fixtures
==================================
Shared fixtures for scanning layer tests: a controllable clock, a scripted
remote scanning service and an in-memory history store.
"""

import asyncio
import hashlib
from collections import defaultdict
from typing import Optional

import pytest

from ..config import PollingConfig, ProcessingConfig, RateLimitConfig
from ..connectors.base import PollResult
from ..models import (
    AnalysisReport,
    EngineResult,
    FileEntry,
    FileInfo,
    HistoryEntry,
    ScanStats,
    ScanTask,
    generate_id,
    utcnow,
)
from ..processing_scheduler import ProcessingScheduler
from ..services import (
    DuplicateDetector,
    RateLimiter,
    ResultPoller,
    TaskQueue,
    TaskSubmitter,
)


class FakeClock:
    """Virtual time; ``sleep`` advances the clock instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.time = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.time

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.time += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.time += seconds


class FakeScanClient:
    """
    Scripted remote scanning service.

    Records the clock time of every call so tests can check rate bounds.
    Queued exceptions in ``submit_errors``/``poll_errors`` are raised first.
    """

    def __init__(
        self,
        clock: FakeClock,
        polls_until_ready: int = 1,
        never_ready: bool = False,
        malicious: int = 0,
        include_file_info: bool = True,
    ):
        self.clock = clock
        self.polls_until_ready = polls_until_ready
        self.never_ready = never_ready
        self.malicious = malicious
        self.include_file_info = include_file_info

        self.submit_errors: list[Exception] = []
        self.poll_errors: list[Exception] = []
        self.submissions: list[tuple[str, float]] = []  # (filename, time)
        self.call_times: list[float] = []
        self.poll_counts: dict[str, int] = defaultdict(int)
        self._content: dict[str, bytes] = {}
        self.closed = False

    async def submit(self, content: bytes, filename: str = "file") -> str:
        self.call_times.append(self.clock.now())
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submissions.append((filename, self.clock.now()))
        analysis_id = f"analysis-{len(self.submissions)}"
        self._content[analysis_id] = content
        return analysis_id

    async def poll(self, analysis_id: str) -> PollResult:
        self.call_times.append(self.clock.now())
        if self.poll_errors:
            raise self.poll_errors.pop(0)
        self.poll_counts[analysis_id] += 1
        if self.never_ready or self.poll_counts[analysis_id] < self.polls_until_ready:
            return PollResult(ready=False, status="queued")

        content = self._content.get(analysis_id, b"")
        file_info = None
        if self.include_file_info:
            file_info = FileInfo(sha256=hashlib.sha256(content).hexdigest(), size=len(content))
        report = AnalysisReport(
            id=analysis_id,
            stats=ScanStats(malicious=self.malicious, undetected=60 - self.malicious),
            results={"EngineA": EngineResult(category="undetected", engine_name="EngineA")},
            file_info=file_info,
        )
        return PollResult(ready=True, report=report, status="completed")

    async def close(self) -> None:
        self.closed = True


class InMemoryHistoryStore:
    """Minimal history store: duplicate lookup plus append."""

    def __init__(self):
        self.entries: list[HistoryEntry] = []
        self.added: list[ScanTask] = []

    async def find_existing_scan(self, sha256: str, size: int) -> Optional[HistoryEntry]:
        matches = [
            e for e in self.entries
            if e.is_reusable
            and e.report.file_info.sha256 == sha256
            and e.report.file_info.size == size
        ]
        return max(matches, key=lambda e: e.completed_at) if matches else None

    async def add_to_history(self, task: ScanTask) -> HistoryEntry:
        self.added.append(task)
        entry = HistoryEntry(
            id=generate_id(),
            file_id=task.file.id,
            file_name=task.file.name,
            file_size=task.file.size,
            file_type=task.file.type,
            status=task.status,
            progress=task.progress,
            error=task.error,
            analysis_id=task.analysis_id,
            report=task.report,
            created_at=task.created_at,
            updated_at=task.updated_at,
            completed_at=utcnow(),
        )
        self.entries.append(entry)
        return entry


def make_entry(name: str, content: bytes, file_id: Optional[str] = None) -> FileEntry:
    return FileEntry(
        id=file_id or f"file-{name}",
        name=name,
        size=len(content),
        path=f"extracted/{name}",
        content=content,
    )


def assert_rate_bounds(times: list[float], limit: int, window: float, spacing: float) -> None:
    """No more than ``limit`` calls in any trailing window and none closer than ``spacing``."""
    ordered = sorted(times)
    for earlier, later in zip(ordered, ordered[1:]):
        assert later - earlier >= spacing - 1e-9
    for i, start in enumerate(ordered):
        in_window = [t for t in ordered[i:] if t - start < window]
        assert len(in_window) <= limit


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limit_config():
    return RateLimitConfig(request_limit=4, request_window=60.0, min_request_spacing=18.0)


@pytest.fixture
def polling_config():
    return PollingConfig()


@pytest.fixture
def processing_config():
    return ProcessingConfig(max_workers=1)


@pytest.fixture
def client(clock):
    return FakeScanClient(clock)


@pytest.fixture
def history_store():
    return InMemoryHistoryStore()


@pytest.fixture
def queue():
    return TaskQueue()


@pytest.fixture
def rate_limiter(rate_limit_config, clock):
    return RateLimiter(rate_limit_config, clock)


@pytest.fixture
def build_scheduler(queue, rate_limiter, client, history_store, polling_config, rate_limit_config, clock):
    """Factory wiring a scheduler from the shared fixtures."""

    def build(processing_config: Optional[ProcessingConfig] = None, store=history_store):
        detector = DuplicateDetector(store)
        submitter = TaskSubmitter(
            queue, client, rate_limiter,
            polling_config=polling_config,
            rate_limit_config=rate_limit_config,
            clock=clock,
        )
        poller = ResultPoller(queue, client, rate_limiter, config=polling_config, clock=clock)
        return ProcessingScheduler(
            queue, detector, submitter, poller, rate_limiter,
            store=store,
            config=processing_config or ProcessingConfig(max_workers=1),
            clock=clock,
        )

    return build
