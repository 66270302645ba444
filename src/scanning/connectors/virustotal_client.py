"""
VirusTotal Connector
====================
VirusTotal v3 API client over httpx.

Endpoints used:
- POST /files            upload, returns the analysis id
- GET  /analyses/{id}    analysis status, stats and per-engine results
- GET  /users/current    API key validation

HTTP failures are mapped onto the scanning error taxonomy: 429 becomes
``RateLimitSignal``, timeouts, connection errors and 5xx become
``TransientScanError`` and the remaining 4xx become ``ScanServiceError``.
"""

import logging
from typing import Any, Optional

import httpx

from ..config import VirusTotalConfig
from ..exceptions import RateLimitSignal, ScanServiceError, TransientScanError
from ..models import AnalysisReport
from .base import PollResult

logger = logging.getLogger(__name__)

SERVER_ERROR_STATUSES = frozenset({500, 502, 503, 504})


class VirusTotalClient:
    """
    Async VirusTotal client.

    The underlying ``httpx.AsyncClient`` is created lazily and may be
    supplied by the caller (tests pass one built on ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: Optional[VirusTotalConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or VirusTotalConfig()
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    @property
    def _headers(self) -> dict[str, str]:
        return {"x-apikey": self.config.api_key, "accept": "application/json"}

    def _url(self, path: str) -> str:
        return f"{self.config.api_url.rstrip('/')}/{path.lstrip('/')}"

    # =========================================================================
    # Scanning
    # =========================================================================

    async def submit(self, content: bytes, filename: str = "file") -> str:
        """
        Upload a file for scanning.

        Args:
            content: Raw file bytes
            filename: Name reported to the service

        Returns:
            Analysis id to poll
        """
        response = await self._request(
            "POST",
            "/files",
            files={"file": (filename or "file", content, "application/octet-stream")},
        )
        data = self._json(response)
        try:
            return str(data["data"]["id"])
        except (KeyError, TypeError):
            raise ScanServiceError("Submit response did not contain an analysis id")

    async def poll(self, analysis_id: str) -> PollResult:
        """Fetch an analysis; ready once completed or engine results exist."""
        response = await self._request("GET", f"/analyses/{analysis_id}")
        payload = self._json(response)

        data = payload.get("data") or {}
        attributes = (data.get("attributes") or {}) if isinstance(data, dict) else None
        if not isinstance(attributes, dict):
            raise ScanServiceError("Unexpected response shape from VirusTotal")
        status = attributes.get("status", "queued")
        results = attributes.get("results") or {}
        if not isinstance(results, dict):
            raise ScanServiceError("Unexpected response shape from VirusTotal")

        if status != "completed" and not results:
            return PollResult(ready=False, status=status)

        report = AnalysisReport.from_dict({
            "id": analysis_id,
            "status": status,
            "stats": attributes.get("stats"),
            "results": results,
            "meta": payload.get("meta"),
        })
        return PollResult(ready=True, report=report, status=status)

    async def validate_api_key(self) -> bool:
        """
        Check the configured key against the service.

        A rate-limited or unreachable service counts as valid so that the
        caller can still try to scan; only an auth failure is invalid.
        """
        if not self.config.has_api_key:
            return False

        try:
            await self._request("GET", "/users/current")
            return True
        except RateLimitSignal:
            return True
        except TransientScanError as e:
            logger.warning(f"Could not reach VirusTotal to validate API key: {e}")
            return True
        except ScanServiceError as e:
            if e.status_code in (401, 403):
                return False
            raise

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                self._url(path),
                headers=self._headers,
                timeout=self.config.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise TransientScanError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientScanError(f"Network error calling {path}: {e}") from e

        self._raise_for_status(response, path)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, path: str) -> None:
        status = response.status_code
        if status < 400:
            return

        if status == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitSignal(
                f"Rate limit exceeded calling {path}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status in (401, 403):
            raise ScanServiceError("Invalid API key or insufficient permissions", status_code=status)
        if status == 404:
            raise ScanServiceError(f"Resource not found: {path}", status_code=status)
        if status in SERVER_ERROR_STATUSES:
            raise TransientScanError(f"VirusTotal server error ({status})", status_code=status)
        raise ScanServiceError(
            f"HTTP {status}: {response.reason_phrase or 'Request failed'}", status_code=status
        )

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ScanServiceError("Malformed response from VirusTotal") from e
        if not isinstance(data, dict):
            raise ScanServiceError("Unexpected response shape from VirusTotal")
        return data
