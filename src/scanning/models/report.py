"""
Analysis Report Models
======================
Outcome of a remote scan: detection statistics, per-engine verdicts and the
file metadata used for duplicate lookups.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional


@dataclass(frozen=True)
class ScanStats:
    """Detection counts across all engines."""
    harmless: int = 0
    malicious: int = 0
    suspicious: int = 0
    undetected: int = 0
    timeout: int = 0

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ScanStats":
        data = data or {}
        return cls(
            harmless=int(data.get("harmless", 0) or 0),
            malicious=int(data.get("malicious", 0) or 0),
            suspicious=int(data.get("suspicious", 0) or 0),
            undetected=int(data.get("undetected", 0) or 0),
            timeout=int(data.get("timeout", 0) or 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "harmless": self.harmless,
            "malicious": self.malicious,
            "suspicious": self.suspicious,
            "undetected": self.undetected,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class EngineResult:
    """Verdict of a single antivirus engine."""
    category: str
    engine_name: str
    engine_version: Optional[str] = None
    result: Optional[str] = None
    method: Optional[str] = None
    engine_update: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "EngineResult":
        return cls(
            category=data.get("category", "undetected"),
            engine_name=data.get("engine_name", name),
            engine_version=data.get("engine_version"),
            result=data.get("result"),
            method=data.get("method"),
            engine_update=data.get("engine_update"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "engine_name": self.engine_name,
            "engine_version": self.engine_version,
            "result": self.result,
            "method": self.method,
            "engine_update": self.engine_update,
        }


@dataclass(frozen=True)
class FileInfo:
    """File metadata attached to a report. ``sha256`` and ``size`` form the dedup key."""
    sha256: str
    size: int
    file_type: str = ""
    filename: str = ""
    sha1: str = ""
    md5: str = ""

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["FileInfo"]:
        if not data or not data.get("sha256"):
            return None
        return cls(
            sha256=str(data["sha256"]),
            size=int(data.get("size", 0) or 0),
            file_type=data.get("file_type", "") or "",
            filename=data.get("filename", "") or "",
            sha1=data.get("sha1", "") or "",
            md5=data.get("md5", "") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sha256": self.sha256,
            "size": self.size,
            "file_type": self.file_type,
            "filename": self.filename,
            "sha1": self.sha1,
            "md5": self.md5,
        }


@dataclass(frozen=True)
class AnalysisReport:
    """Remote scan report."""
    id: str
    stats: ScanStats = field(default_factory=ScanStats)
    results: dict[str, EngineResult] = field(default_factory=dict)
    file_info: Optional[FileInfo] = None
    status: str = "completed"

    @property
    def detection_count(self) -> int:
        return self.stats.malicious

    @property
    def is_safe(self) -> bool:
        """True when no engine flagged the file as malicious."""
        return self.stats.malicious == 0

    @property
    def has_file_info(self) -> bool:
        return self.file_info is not None and bool(self.file_info.sha256) and self.file_info.size > 0

    def with_file_info(
        self,
        sha256: str,
        size: int,
        file_type: str = "",
        filename: str = "",
    ) -> "AnalysisReport":
        """Return a copy carrying locally computed file metadata when the remote omitted it."""
        if self.has_file_info:
            return self
        return replace(
            self,
            file_info=FileInfo(sha256=sha256, size=size, file_type=file_type, filename=filename),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisReport":
        meta = data.get("meta") or {}
        return cls(
            id=str(data.get("id", "")),
            stats=ScanStats.from_dict(data.get("stats")),
            results={
                name: EngineResult.from_dict(name, result or {})
                for name, result in (data.get("results") or {}).items()
            },
            file_info=FileInfo.from_dict(meta.get("file_info")),
            status=data.get("status", "completed"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "stats": self.stats.to_dict(),
            "results": {name: result.to_dict() for name, result in self.results.items()},
        }
        if self.file_info is not None:
            data["meta"] = {"file_info": self.file_info.to_dict()}
        return data
