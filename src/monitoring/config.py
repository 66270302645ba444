"""
Monitoring Configuration
========================
Logging configuration for the scanner.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class LoggingConfig:
    """Structured logging configuration."""
    enabled: bool = True
    level: str = "INFO"
    format: str = "console"  # json, text, console
    # Output destinations
    console_enabled: bool = True
    file_enabled: bool = False
    file_path: str = "scanner.log"
    file_max_size_mb: int = 10
    file_backup_count: int = 3
    # Include fields (json)
    include_timestamp: bool = True
    include_level: bool = True
    include_logger: bool = True
    include_caller: bool = False
    # Sensitive field masking
    mask_fields: list[str] = field(default_factory=lambda: [
        "api_key", "x-apikey", "apikey", "authorization", "password", "token", "secret",
    ])
    # Third-party loggers held at WARNING unless running at DEBUG
    quiet_loggers: list[str] = field(default_factory=lambda: [
        "httpx", "httpcore", "sqlalchemy.engine", "aiosqlite",
    ])

    @classmethod
    def from_env(cls, level: Optional[str] = None) -> "LoggingConfig":
        """Create configuration from environment variables."""
        return cls(
            level=(level or os.getenv("SCANNER_LOG_LEVEL", "INFO")).upper(),
            format=os.getenv("SCANNER_LOG_FORMAT", "console").lower(),
            file_enabled=bool(os.getenv("SCANNER_LOG_FILE")),
            file_path=os.getenv("SCANNER_LOG_FILE", "scanner.log"),
        )
