"""
Monitoring Services
===================
"""

from .logging import (
    ConsoleFormatter,
    JSONFormatter,
    TextFormatter,
    configure_logging,
    create_formatter,
)

__all__ = [
    "ConsoleFormatter",
    "JSONFormatter",
    "TextFormatter",
    "configure_logging",
    "create_formatter",
]
