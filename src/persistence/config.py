"""
Persistence Configuration
=========================
Database location and history retention settings.
"""

from __future__ import annotations

import os
from datetime import timedelta

from pydantic import BaseModel, Field


class PersistenceConfig(BaseModel):
    """SQLite (aiosqlite) storage configuration."""
    database_url: str = Field(
        default_factory=lambda: os.getenv("SCANNER_DATABASE_URL", "sqlite+aiosqlite:///scanner.db")
    )
    echo: bool = Field(default_factory=lambda: os.getenv("SCANNER_DATABASE_ECHO", "false").lower() == "true")
    default_retention_days: int = Field(default=30, ge=1)
    cleanup_interval: timedelta = timedelta(days=1)

    @classmethod
    def from_env(cls) -> "PersistenceConfig":
        """Create configuration from environment variables."""
        return cls()
