"""
Tests for VirusTotal Connector
==============================
HTTP behaviour is exercised against ``httpx.MockTransport``.
"""

import httpx
import pytest

from ..config import VirusTotalConfig
from ..connectors import VirusTotalClient
from ..exceptions import RateLimitSignal, ScanServiceError, TransientScanError

API_URL = "https://vt.test/api/v3"


def make_client(handler, api_key="test-key"):
    config = VirusTotalConfig(api_key=api_key, api_url=API_URL)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return VirusTotalClient(config, http_client=http_client)


def analysis_payload(status="completed", results=None, stats=None, file_info=None):
    payload = {
        "data": {
            "id": "an-1",
            "type": "analysis",
            "attributes": {
                "status": status,
                "stats": stats or {},
                "results": results or {},
            },
        }
    }
    if file_info is not None:
        payload["meta"] = {"file_info": file_info}
    return payload


class TestSubmit:

    @pytest.mark.asyncio
    async def test_upload_returns_analysis_id(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {"type": "analysis", "id": "an-42"}})

        client = make_client(handler)
        analysis_id = await client.submit(b"MZ...", "sample.exe")
        await client.close()

        assert analysis_id == "an-42"
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == f"{API_URL}/files"
        assert request.headers["x-apikey"] == "test-key"
        assert b"sample.exe" in request.content

    @pytest.mark.asyncio
    async def test_missing_id_is_a_service_error(self):
        client = make_client(lambda request: httpx.Response(200, json={"data": {}}))
        with pytest.raises(ScanServiceError):
            await client.submit(b"x", "x.bin")

    @pytest.mark.asyncio
    async def test_malformed_json_is_a_service_error(self):
        client = make_client(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(ScanServiceError):
            await client.submit(b"x", "x.bin")


class TestPoll:

    @pytest.mark.asyncio
    async def test_queued_analysis_is_not_ready(self):
        client = make_client(lambda request: httpx.Response(200, json=analysis_payload(status="queued")))

        result = await client.poll("an-1")

        assert result.ready is False
        assert result.status == "queued"
        assert result.report is None

    @pytest.mark.asyncio
    async def test_completed_analysis_builds_report(self):
        payload = analysis_payload(
            stats={"malicious": 2, "undetected": 60},
            results={
                "EngineA": {"category": "malicious", "engine_name": "EngineA", "result": "Trojan.Gen"},
                "EngineB": {"category": "undetected", "engine_name": "EngineB"},
            },
            file_info={"sha256": "ab" * 32, "size": 1234, "md5": "m", "sha1": "s"},
        )
        client = make_client(lambda request: httpx.Response(200, json=payload))

        result = await client.poll("an-1")

        assert result.ready is True
        report = result.report
        assert report.id == "an-1"
        assert report.stats.malicious == 2
        assert report.is_safe is False
        assert report.results["EngineA"].result == "Trojan.Gen"
        assert report.file_info.sha256 == "ab" * 32
        assert report.file_info.size == 1234

    @pytest.mark.asyncio
    async def test_results_present_counts_as_ready(self):
        payload = analysis_payload(
            status="in-progress",
            results={"EngineA": {"category": "undetected"}},
        )
        client = make_client(lambda request: httpx.Response(200, json=payload))

        result = await client.poll("an-1")

        assert result.ready is True
        assert result.report.file_info is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"data": ["an-1"]},
            {"data": {"attributes": "queued"}},
            {"data": {"attributes": {"status": "completed", "results": ["EngineA"]}}},
        ],
    )
    async def test_unexpected_shape_is_a_service_error(self, payload):
        client = make_client(lambda request: httpx.Response(200, json=payload))

        with pytest.raises(ScanServiceError, match="Unexpected response shape"):
            await client.poll("an-1")


class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_429_raises_rate_limit_signal(self):
        client = make_client(lambda request: httpx.Response(429, headers={"retry-after": "30"}))

        with pytest.raises(RateLimitSignal) as exc_info:
            await client.poll("an-1")
        assert exc_info.value.retry_after == 30.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    async def test_server_errors_are_transient(self, status):
        client = make_client(lambda request: httpx.Response(status))

        with pytest.raises(TransientScanError) as exc_info:
            await client.poll("an-1")
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    async def test_client_errors_are_not_retryable(self, status):
        client = make_client(lambda request: httpx.Response(status))

        with pytest.raises(ScanServiceError) as exc_info:
            await client.submit(b"x", "x.bin")
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(TransientScanError):
            await client.submit(b"x", "x.bin")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(TransientScanError):
            await client.poll("an-1")


class TestValidateApiKey:

    @pytest.mark.asyncio
    async def test_missing_key_is_invalid_without_request(self):
        calls = []
        client = make_client(lambda request: calls.append(request) or httpx.Response(200), api_key="")

        assert await client.validate_api_key() is False
        assert calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected",
        [(200, True), (401, False), (403, False), (429, True), (503, True)],
    )
    async def test_validation_result_by_status(self, status, expected):
        client = make_client(lambda request: httpx.Response(status, json={}))
        assert await client.validate_api_key() is expected
