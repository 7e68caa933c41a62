"""
HTTP client for the scan and report service.

DAST/SAST scans and detailed reports are plain JSON calls retried on
transient failures. Summaries are streamed back as text chunks.
"""

from typing import AsyncIterator, Optional

import httpx

from mira.models.errors import ServiceError
from mira.models.schemas import ScanResult, ScanSastResult
from mira.utils.logger import get_logger
from mira.utils.retry import retry_with_backoff

logger = get_logger("scan_client")

SCAN_TIMEOUT = 300.0
REPORT_TIMEOUT = 120.0


class ScanServiceClient:
    """Async wrapper around the scan/report service REST API."""

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    async def _post_json(self, path: str, payload: dict, timeout: float) -> dict:
        async with self._client(timeout) as client:
            resp = await client.post(path, json=payload)
            resp.raise_for_status()
            data = resp.json()
        if not isinstance(data, dict):
            raise ServiceError(f"Unexpected response from {path}: {type(data).__name__}")
        return data

    async def _stream(self, path: str, payload: dict) -> AsyncIterator[str]:
        async with self._client(REPORT_TIMEOUT) as client:
            async with client.stream("POST", path, json=payload) as resp:
                resp.raise_for_status()
                async for chunk in resp.aiter_text():
                    if chunk:
                        yield chunk

    # ── Scans ─────────────────────────────────────────────────────────

    @retry_with_backoff(max_retries=2, base_delay=1.0)
    async def scan(self, url: str, standard: str, scan_type: str, user_id: Optional[str] = None) -> ScanResult:
        """POST /scan: DAST scan of ``url`` against a compliance standard."""
        logger.info("DAST scan requested", extra={"user_id": user_id, "action": "scan", "extra": {"url": url, "standard": standard, "scan_type": scan_type}})
        data = await self._post_json(
            "/scan",
            {"url": url, "complianceStandard": standard, "scanType": scan_type, "userId": user_id},
            SCAN_TIMEOUT,
        )
        return ScanResult.model_validate(data)

    @retry_with_backoff(max_retries=2, base_delay=1.0)
    async def scan_repo(
        self,
        repo_url: str,
        repo_type: str,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ScanSastResult:
        """POST /scan/github: SAST scan of a public or private repository."""
        logger.info("SAST scan requested", extra={"user_id": user_id, "action": "scan_repo", "extra": {"url": repo_url, "repo_type": repo_type}})
        payload = {"githubUrl": repo_url, "repoType": repo_type, "userId": user_id}
        if token:
            payload["accessToken"] = token
        data = await self._post_json("/scan/github", payload, SCAN_TIMEOUT)
        return ScanSastResult.model_validate(data)

    # ── Streamed summaries ────────────────────────────────────────────

    def stream_report(self, scan: ScanResult) -> AsyncIterator[str]:
        """POST /scan/report: brief DAST summary as text chunks."""
        return self._stream("/scan/report", scan.model_dump(mode="json", by_alias=True))

    def stream_sast_report(self, scan: ScanSastResult) -> AsyncIterator[str]:
        """POST /scan/sast-report: brief SAST summary as text chunks."""
        return self._stream("/scan/sast-report", scan.model_dump(mode="json"))

    def stream_chat_summary(self, messages: list[str]) -> AsyncIterator[str]:
        """POST /chat/chat-summary: summary of the conversation so far."""
        return self._stream("/chat/chat-summary", {"messages": messages})

    # ── Detailed reports ──────────────────────────────────────────────

    @retry_with_backoff(max_retries=2, base_delay=1.0)
    async def detailed_report(self, scan: ScanResult) -> str:
        """POST /scan/detailed-report: full markdown report for a DAST result."""
        data = await self._post_json("/scan/detailed-report", scan.model_dump(mode="json", by_alias=True), REPORT_TIMEOUT)
        return self._markdown(data)

    @retry_with_backoff(max_retries=2, base_delay=1.0)
    async def detailed_sast_report(self, scan: ScanSastResult) -> str:
        """POST /scan/detailed-sast-report: full markdown report for a SAST result."""
        data = await self._post_json("/scan/detailed-sast-report", scan.model_dump(mode="json"), REPORT_TIMEOUT)
        return self._markdown(data)

    @staticmethod
    def _markdown(data: dict) -> str:
        markdown = data.get("response")
        if not isinstance(markdown, str) or not markdown:
            raise ServiceError("Report service returned no markdown")
        return markdown
