import pytest
from unittest.mock import AsyncMock, MagicMock

from mira.conversation.orchestrator import ChatOrchestrator
from mira.integrations.folder_store import FolderStore
from mira.integrations.message_store import MessageStore
from mira.models.schemas import AnswerPayload, ReasoningStep, ScanResult, ScanSastResult, SourceLink, Jargon


async def chunks(*parts):
    for part in parts:
        yield part


def make_answer(text="XSS is a client-side injection flaw.", **overrides) -> AnswerPayload:
    defaults = dict(
        answer=text,
        reasoning_trace=[ReasoningStep(narrative="Looked up XSS in the knowledge graph.")],
        jargons=[Jargon(term="XSS", description="Cross-site scripting")],
        source_links=[SourceLink(title="OWASP XSS", url="https://owasp.org/www-community/attacks/xss/")],
        dynamic_tag="web_security",
    )
    defaults.update(overrides)
    return AnswerPayload(**defaults)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "mira.db")


@pytest.fixture
def message_store(db_path):
    return MessageStore(db_path)


@pytest.fixture
def folder_store(db_path):
    return FolderStore(db_path)


@pytest.fixture
def answer_service():
    service = MagicMock()
    service.ask = AsyncMock(return_value=make_answer())
    service.generate_title = AsyncMock(return_value="Scanning example.com")
    return service


@pytest.fixture
def scan_client():
    client = MagicMock()
    client.scan = AsyncMock(return_value=ScanResult(
        url="https://example.com",
        complianceStandardUrl="OWASP Top 10",
        totals={"totalIssues": 7},
    ))
    client.scan_repo = AsyncMock(return_value=ScanSastResult(
        issues=[{"rule": "S1"}, {"rule": "S2"}, {"rule": "S3"}],
        hotspots=[{"rule": "H1"}],
    ))
    client.stream_report = MagicMock(side_effect=lambda scan: chunks("The site ", "has 7 issues."))
    client.stream_sast_report = MagicMock(side_effect=lambda scan: chunks("Repository ", "summary."))
    client.stream_chat_summary = MagicMock(side_effect=lambda messages: chunks("Chat ", "summary."))
    client.detailed_report = AsyncMock(return_value="# Detailed DAST report")
    client.detailed_sast_report = AsyncMock(return_value="# Detailed SAST report")
    return client


@pytest.fixture
def orchestrator(message_store, folder_store, answer_service, scan_client):
    return ChatOrchestrator(
        message_store=message_store,
        folder_store=folder_store,
        answer_service=answer_service,
        scan_client=scan_client,
        step_delay=0,
    )
