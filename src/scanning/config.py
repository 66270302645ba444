"""
Scanner Configuration
=====================
Centralized configuration for rate limiting, polling, processing and the
remote scanning service.
"""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class RateLimitConfig(BaseModel):
    """Outbound request admission limits (VirusTotal public API: 4/min)."""
    request_limit: int = Field(default_factory=lambda: _env_int("SCANNER_REQUEST_LIMIT", 4), ge=1)
    request_window: float = Field(default_factory=lambda: _env_float("SCANNER_REQUEST_WINDOW", 60.0), gt=0)
    min_request_spacing: float = Field(
        default_factory=lambda: _env_float("SCANNER_MIN_REQUEST_SPACING", 18.0), ge=0
    )
    safety_buffer: float = 1.0  # added when waiting for the window to roll over
    rate_limited_cooldown: float = 60.0  # remote 429 backoff


class PollingConfig(BaseModel):
    """Result polling cadence, retry budget and scan timeout."""
    poll_interval: float = 20.0
    single_file_first_poll: float = 3.0
    rate_limited_poll_interval: float = 60.0
    # Adaptive interval tiers, keyed by elapsed scanning time
    small_scan_threshold: float = 30.0
    long_running_threshold: float = 120.0
    very_long_running_threshold: float = 300.0
    single_small_interval: float = 8.0
    single_interval: float = 12.0
    batch_small_interval: float = 15.0
    long_running_interval: float = 20.0
    very_long_running_interval: float = 30.0
    # Transient error retries
    max_retries: int = 3
    retry_multiplier: float = 2.0
    max_retry_delay: float = 120.0
    # Progress reporting while not ready
    progress_cap: int = Field(default=95, ge=0, le=99)
    max_scan_time: float = Field(default_factory=lambda: _env_float("SCANNER_MAX_SCAN_TIME", 600.0), gt=0)


class ProcessingConfig(BaseModel):
    """Scheduler loop timing."""
    single_file_wait: float = 2.0
    batch_wait: float = 5.0
    batch_submit_delay: float = 2.0
    settle_delay: float = 1.0
    # Due polls give way to new uploads until they are this far overdue
    max_poll_lag: float = 60.0
    max_workers: int = Field(default_factory=lambda: _env_int("SCANNER_MAX_WORKERS", 1), ge=1)
    autosave_interval: float = 30.0
    single_file_autosave_interval: float = 15.0


class VirusTotalConfig(BaseModel):
    """VirusTotal API configuration."""
    api_key: str = Field(default_factory=lambda: os.getenv("VT_API_KEY", ""))
    api_url: str = Field(
        default_factory=lambda: os.getenv("VT_API_URL", "https://www.virustotal.com/api/v3")
    )
    timeout: float = 30.0

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key.strip())


class ScannerConfig(BaseModel):
    """Combined scanner configuration."""
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    virustotal: VirusTotalConfig = Field(default_factory=VirusTotalConfig)

    @classmethod
    def from_env(cls) -> "ScannerConfig":
        """Create configuration from environment variables."""
        return cls()
