import json
import httpx
import pytest
from unittest.mock import AsyncMock, patch

from mira.integrations.scan_client import ScanServiceClient
from mira.models.errors import ServiceError
from mira.models.schemas import ScanResult, ScanSastResult


def _client(handler) -> ScanServiceClient:
    return ScanServiceClient("http://scanner.test/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_scan_posts_expected_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "url": "https://example.com",
            "complianceStandardUrl": "OWASP Top 10",
            "vulnerabilities": [{"id": 1}, {"id": 2}],
            "scanId": "s-1",
        })

    result = await _client(handler).scan("https://example.com", "OWASP Top 10", "Active Scan", "user-1")

    assert seen["path"] == "/scan"
    assert seen["body"] == {
        "url": "https://example.com",
        "complianceStandard": "OWASP Top 10",
        "scanType": "Active Scan",
        "userId": "user-1",
    }
    assert result.compliance_standard_url == "OWASP Top 10"
    assert result.total_issues == 2
    # Unknown service fields are kept for the report endpoints
    assert result.model_dump(by_alias=True)["scanId"] == "s-1"


@pytest.mark.asyncio
async def test_scan_repo_sends_token_only_when_given():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"issues": [{"rule": "S1"}], "hotspots": []})

    client = _client(handler)
    await client.scan_repo("https://github.com/acme/webapp", "public", None, "user-1")
    result = await client.scan_repo("https://github.com/acme/webapp", "private", "ghp_token", "user-1")

    assert "accessToken" not in bodies[0]
    assert bodies[1]["accessToken"] == "ghp_token"
    assert bodies[1]["repoType"] == "private"
    assert len(result.issues) == 1


@pytest.mark.asyncio
async def test_retries_on_503():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"url": "https://example.com", "totals": {"totalIssues": 4}})

    with patch("mira.utils.retry.asyncio.sleep", new_callable=AsyncMock):
        result = await _client(handler).scan("https://example.com", "NIST", "Passive Scan")

    assert len(calls) == 2
    assert result.total_issues == 4


@pytest.mark.asyncio
async def test_client_errors_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"detail": "bad url"})

    with pytest.raises(httpx.HTTPStatusError):
        await _client(handler).scan("not-a-url", "NIST", "Passive Scan")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_detailed_report_returns_markdown():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/scan/detailed-report"
        assert json.loads(request.content)["complianceStandardUrl"] == "OWASP Top 10"
        return httpx.Response(200, json={"response": "# Report"})

    scan = ScanResult(complianceStandardUrl="OWASP Top 10")
    assert await _client(handler).detailed_report(scan) == "# Report"


@pytest.mark.asyncio
async def test_detailed_report_without_markdown_is_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok"})

    with pytest.raises(ServiceError):
        await _client(handler).detailed_sast_report(ScanSastResult())


@pytest.mark.asyncio
async def test_stream_chat_summary_yields_text():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/chat/chat-summary"
        assert json.loads(request.content) == {"messages": ["What is XSS?", "XSS is..."]}
        return httpx.Response(200, text="The user asked about XSS.")

    parts = [chunk async for chunk in _client(handler).stream_chat_summary(["What is XSS?", "XSS is..."])]
    assert "".join(parts) == "The user asked about XSS."
