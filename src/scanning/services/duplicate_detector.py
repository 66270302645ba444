"""
Duplicate Detector
==================
Content fingerprinting and history lookup so byte-identical artifacts are
served from a previous scan instead of being submitted again.

The dedup key is the SHA-256 digest combined with the byte length. Only
completed/reused history entries whose report carries file metadata are
eligible matches.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Optional

from persistence.exceptions import PersistenceError

from ..exceptions import ScanError
from ..models import HistoryEntry, ScanTask, TaskStatus

if TYPE_CHECKING:
    from persistence import PersistenceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fingerprint:
    """Composite content key."""
    sha256: str
    size: int


def compute_sha256(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class DuplicateDetector:
    """
    Looks up prior scan results for an artifact's content.

    Usage:
        detector = DuplicateDetector(store)
        fp = await detector.fingerprint(task)
        match = await detector.lookup(fp.sha256, fp.size)
        if match:
            queue.update(task.id, **detector.reused_changes(task, match, fp))
    """

    def __init__(self, store: Optional["PersistenceStore"] = None):
        self.store = store

    async def fingerprint(self, task: ScanTask) -> Fingerprint:
        """
        Compute the content fingerprint of a task.

        A hash supplied by the extractor is trusted; otherwise the digest is
        computed off the event loop.

        Raises:
            ScanError: Task has neither content nor a precomputed hash
        """
        entry = task.file
        if entry.sha256:
            size = len(entry.content) if entry.content is not None else entry.size
            return Fingerprint(sha256=entry.sha256.lower(), size=size)

        if entry.content is None:
            raise ScanError(f"Content for {entry.name} is not available")

        loop = asyncio.get_running_loop()
        digest = await loop.run_in_executor(None, compute_sha256, entry.content)
        return Fingerprint(sha256=digest, size=len(entry.content))

    async def lookup(self, sha256: str, size: int) -> Optional[HistoryEntry]:
        """
        Find the most recently completed reusable history entry for a key.

        Lookup failures are logged and treated as a miss so the artifact is
        scanned normally.
        """
        if self.store is None:
            return None

        try:
            match = await self.store.find_existing_scan(sha256, size)
        except PersistenceError as e:
            logger.warning(f"Duplicate lookup failed for {sha256[:12]}: {e}")
            return None

        if match is not None and not match.is_reusable:
            # Store returned something it should have filtered
            logger.warning(f"Ignoring non-reusable history match {match.id}")
            return None
        return match

    async def check(self, task: ScanTask) -> tuple[Fingerprint, Optional[HistoryEntry]]:
        """Fingerprint a task and look up its key in one call."""
        fp = await self.fingerprint(task)
        match = await self.lookup(fp.sha256, fp.size)
        if match:
            logger.info(f"Duplicate found for {task.file.name}: reusing analysis {match.analysis_id}")
        return fp, match

    @staticmethod
    def reused_changes(task: ScanTask, match: HistoryEntry, fp: Fingerprint) -> dict[str, Any]:
        """
        Field changes that turn a task into the reused variant of a match.

        The copied report keeps its file metadata; when absent it is backfilled
        from the local fingerprint so the reused entry is itself matchable.
        """
        if match.report is None:
            raise ScanError(f"History entry {match.id} has no report to reuse")

        report = match.report.with_file_info(
            sha256=fp.sha256,
            size=fp.size,
            file_type=task.file.type,
            filename=task.file.name,
        )
        return {
            "status": TaskStatus.REUSED,
            "progress": 100,
            "analysis_id": match.analysis_id,
            "report": report,
            "file": replace(task.file, sha256=fp.sha256),
        }
