import asyncio
import time
import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport
from unittest.mock import AsyncMock, MagicMock

from mira.api.main import _handle_frame, create_app
from mira.api.routes import set_orchestrator
from mira.conversation import prompts

UNKNOWN_CHAT = "00000000-0000-4000-8000-000000000000"


@pytest.fixture(autouse=True)
def _install_orchestrator(orchestrator):
    set_orchestrator(orchestrator)
    yield
    set_orchestrator(None)


def _client():
    app = create_app()
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_message_starts_chat_and_opens_scan_step():
    async with _client() as client:
        response = await client.post("/api/chat/message", json={
            "message": "scan https://example.com",
            "user_id": "user-1",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["chat_id"]
        assert data["messages"][-1]["text"] == prompts.MSG_URL_RECEIVED
        assert data["state"]["action_type"] == "scan"


@pytest.mark.asyncio
async def test_structured_replies_drive_scan():
    async with _client() as client:
        start = await client.post("/api/chat/message", json={"message": "scan https://example.com", "user_id": "user-1"})
        chat_id = start.json()["chat_id"]

        response = await client.post(f"/api/chat/{chat_id}/choose", json={"name": "Active Scan"})
        assert response.json()["state"]["action_type"] == "standards"

        response = await client.post(f"/api/chat/{chat_id}/choose", json={"name": "", "option_id": "owasp"})
        assert response.status_code == 200
        assert response.json()["state"]["confirm_type"] == "report"

        response = await client.post(f"/api/chat/{chat_id}/approve", json={"approved": False})
        assert [m["text"] for m in response.json()["messages"]] == ["No", prompts.MSG_CANCELLED]

        state = await client.get(f"/api/chat/{chat_id}/state")
        assert state.json()["pending_action"] is None

        history = await client.get(f"/api/chat/{chat_id}/history")
        assert history.status_code == 200
        assert history.json()["messages"][-1]["text"] == prompts.MSG_CANCELLED


@pytest.mark.asyncio
async def test_mismatched_reply_is_conflict():
    async with _client() as client:
        start = await client.post("/api/chat/message", json={"message": "scan https://example.com", "user_id": "user-1"})
        chat_id = start.json()["chat_id"]
        response = await client.post(f"/api/chat/{chat_id}/input", json={"value": "report.md"})
        assert response.status_code == 409


@pytest.mark.asyncio
async def test_chat_not_found():
    async with _client() as client:
        # Not a UUID
        response = await client.get("/api/chat/nonexistent/state")
        assert response.status_code == 400
        response = await client.get(f"/api/chat/{UNKNOWN_CHAT}/state")
        assert response.status_code == 404
        response = await client.get(f"/api/chat/{UNKNOWN_CHAT}/history")
        assert response.status_code == 404
        response = await client.post(f"/api/chat/{UNKNOWN_CHAT}/cancel")
        assert response.status_code == 404
        response = await client.post("/api/chat/message", json={"message": "hi", "chat_id": UNKNOWN_CHAT})
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_empty_message_rejected():
    async with _client() as client:
        response = await client.post("/api/chat/message", json={"message": ""})
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_and_delete_chats(orchestrator):
    async with _client() as client:
        start = await client.post("/api/chat/message", json={"message": "What is XSS?", "user_id": "user-7"})
        chat_id = start.json()["chat_id"]
        await orchestrator.drain()

        chats = await client.get("/api/chats", params={"user_id": "user-7"})
        assert [c["id"] for c in chats.json()["chats"]] == [chat_id]

        response = await client.delete(f"/api/chat/{chat_id}")
        assert response.status_code == 200
        assert chat_id not in orchestrator.sessions
        response = await client.delete(f"/api/chat/{chat_id}")
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_related_questions_requires_fields():
    async with _client() as client:
        response = await client.post("/api/chat/related-questions", json={"userQuestion": "What is XSS?"})
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_related_questions_generated(orchestrator, monkeypatch):
    generator = MagicMock()
    generator.generate = AsyncMock(return_value=["a?", "b?", "c?"])
    monkeypatch.setattr(orchestrator, "_related", generator)
    async with _client() as client:
        response = await client.post("/api/chat/related-questions", json={
            "userQuestion": "What is XSS?",
            "aiAnswer": "An injection flaw.",
            "previousQuestions": ["What is CSRF?"],
        })
        assert response.status_code == 200
        assert response.json() == {"questions": ["a?", "b?", "c?"]}
        generator.generate.assert_awaited_once_with("What is XSS?", "An injection flaw.", "", ["What is CSRF?"])


@pytest.mark.asyncio
async def test_related_questions_not_ready():
    async with _client() as client:
        response = await client.get(f"/api/chat/{UNKNOWN_CHAT}/related-questions/m1")
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_health_endpoint():
    async with _client() as client:
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_websocket_frames_dispatch(orchestrator):
    start = await orchestrator.handle_message(None, "user-1", "scan https://example.com")
    result = await _handle_frame(start.chat_id, {"type": "choose", "name": "1"})
    assert result.state["action_type"] == "standards"

    result = await _handle_frame(start.chat_id, {"type": "cancel"})
    assert result.messages[-1].text == prompts.MSG_CANCELLED

    assert await _handle_frame(start.chat_id, {"type": "ping"}) is None


@pytest.mark.asyncio
async def test_search_chats(orchestrator):
    async with _client() as client:
        start = await client.post("/api/chat/message", json={"message": "What is XSS?", "user_id": "user-9"})
        chat_id = start.json()["chat_id"]
        await orchestrator.drain()

        response = await client.get("/api/chats/search", params={"user_id": "user-9", "q": "injection"})
        assert response.status_code == 200
        hits = response.json()["hits"]
        assert [(h["chat_id"], h["message"]["text"]) for h in hits] == [
            (chat_id, "XSS is a client-side injection flaw."),
        ]
        assert hits[0]["chat_title"] == "Scanning example.com"

        response = await client.get("/api/chats/search", params={"user_id": "someone-else", "q": "injection"})
        assert response.json()["hits"] == []


def _wait_for(predicate, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition never became true")


def test_websocket_cancel_interrupts_running_scan(orchestrator, scan_client, monkeypatch):
    async def hang(*args):
        await asyncio.Event().wait()

    scan_client.scan.side_effect = hang
    monkeypatch.setattr("mira.api.main.start_cleanup_task", lambda: None)

    with TestClient(create_app()) as client:
        start = client.post("/api/chat/message", json={"message": "scan https://example.com", "user_id": "user-1"})
        chat_id = start.json()["chat_id"]
        client.post(f"/api/chat/{chat_id}/choose", json={"name": "Passive Scan"})
        session = orchestrator.sessions[chat_id]

        with client.websocket_connect(f"/ws/chat/{chat_id}") as ws:
            assert ws.receive_json()["type"] == "connected"
            ws.send_json({"type": "choose", "name": "OWASP Top 10"})
            _wait_for(lambda: session.state.busy == "scan")

            ws.send_json({"type": "cancel"})
            _wait_for(lambda: session.state.is_idle and session.active_task is None)

        history = client.get(f"/api/chat/{chat_id}/history").json()["messages"]
        texts = [m["text"] for m in history]
        assert texts[-2:] == ["No", prompts.MSG_CANCELLED]
        assert not any(t.startswith("Scan completed") for t in texts)
