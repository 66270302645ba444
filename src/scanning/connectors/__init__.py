"""
Scanning Connectors
===================
Clients for remote content-scanning services.
"""

from .base import PollResult, ScanServiceClient
from .virustotal_client import VirusTotalClient

__all__ = ["PollResult", "ScanServiceClient", "VirusTotalClient"]
