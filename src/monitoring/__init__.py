"""
Monitoring Layer
================
Structured logging for the scanner.

Quick Start:
------------
```python
from monitoring import LoggingConfig, configure_logging

configure_logging(LoggingConfig(format="json", level="DEBUG"))
```
"""

from .config import LoggingConfig
from .services.logging import (
    ConsoleFormatter,
    JSONFormatter,
    TextFormatter,
    configure_logging,
    create_formatter,
)

__all__ = [
    "LoggingConfig",
    "ConsoleFormatter",
    "JSONFormatter",
    "TextFormatter",
    "configure_logging",
    "create_formatter",
]
