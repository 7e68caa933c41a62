"""
Chat API routes: turns, structured dialogue replies, history and sidecars.
"""

import asyncio
import re
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException

from mira.config import load_settings
from mira.conversation.orchestrator import ChatOrchestrator, TurnResult
from mira.conversation.related_questions import RelatedQuestionGenerator
from mira.integrations.answer_service import AnswerService
from mira.integrations.artifact_triggers import ArtifactTriggerClient
from mira.integrations.folder_store import FolderStore
from mira.integrations.message_store import MessageStore
from mira.integrations.scan_client import ScanServiceClient
from mira.models.errors import UnexpectedReplyError
from mira.utils.event_emitter import EventEmitter
from mira.utils.llm_client import AnthropicClient
from mira.utils.logger import get_logger

from .models import (
    ApproveRequest,
    ChatListResponse,
    ChatMessageRequest,
    ChatSearchHit,
    ChatSearchResponse,
    ChooseRequest,
    HistoryResponse,
    InputRequest,
    RelatedQuestionsRequest,
    RelatedQuestionsResponse,
    TurnResponse,
)
from .websocket import manager

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

_orchestrator: Optional[ChatOrchestrator] = None

SESSION_TTL_HOURS = 24
SESSION_CLEANUP_INTERVAL_SECONDS = 300  # 5 minutes


def build_orchestrator() -> ChatOrchestrator:
    """Wire the orchestrator and its collaborators from environment settings."""
    settings = load_settings()
    model = settings.anthropic_model or None
    api_key = settings.anthropic_api_key or None
    return ChatOrchestrator(
        message_store=MessageStore(settings.db_path),
        folder_store=FolderStore(settings.db_path),
        answer_service=AnswerService(AnthropicClient(agent_name="answer_service", model=model, api_key=api_key)),
        scan_client=ScanServiceClient(settings.scan_service_url),
        artifact_triggers=ArtifactTriggerClient(settings.graph_service_url),
        related_questions=RelatedQuestionGenerator(
            AnthropicClient(agent_name="related_questions", model=model, api_key=api_key),
            timeout=settings.related_questions_timeout,
        ),
        emitter_factory=lambda chat_id: EventEmitter(chat_id, websocket_manager=manager),
        step_delay=settings.progress_step_delay,
    )


def get_orchestrator() -> ChatOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: Optional[ChatOrchestrator]) -> None:
    """Replace the process-wide orchestrator (used by tests and the app factory)."""
    global _orchestrator
    _orchestrator = orchestrator


def _validate_chat_id(chat_id: str) -> None:
    if not _UUID_RE.match(chat_id):
        raise HTTPException(status_code=400, detail="Invalid chat ID format")


def _turn_response(result: TurnResult) -> TurnResponse:
    return TurnResponse(chat_id=result.chat_id, messages=result.messages, state=result.state)


async def _dispatch(chat_id: str, call) -> TurnResponse:
    """Run an orchestrator call, mapping lookup and step mismatches to HTTP errors."""
    _validate_chat_id(chat_id)
    try:
        result = await call()
    except KeyError:
        raise HTTPException(status_code=404, detail="Chat not found")
    except UnexpectedReplyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _turn_response(result)


# ── Turns ─────────────────────────────────────────────────────────────


@router.post("/chat/message", response_model=TurnResponse)
async def post_message(request: ChatMessageRequest):
    orchestrator = get_orchestrator()
    if request.chat_id:
        return await _dispatch(request.chat_id, lambda: orchestrator.handle_message(
            request.chat_id, request.user_id, request.message, request.personality,
        ))
    result = await orchestrator.handle_message(None, request.user_id, request.message, request.personality)
    return _turn_response(result)


@router.post("/chat/{chat_id}/choose", response_model=TurnResponse)
async def choose_option(chat_id: str, request: ChooseRequest):
    orchestrator = get_orchestrator()
    return await _dispatch(chat_id, lambda: orchestrator.choose_option(chat_id, request.name, request.option_id))


@router.post("/chat/{chat_id}/approve", response_model=TurnResponse)
async def approve(chat_id: str, request: ApproveRequest):
    orchestrator = get_orchestrator()
    return await _dispatch(chat_id, lambda: orchestrator.approve(chat_id, request.approved))


@router.post("/chat/{chat_id}/input", response_model=TurnResponse)
async def submit_input(chat_id: str, request: InputRequest):
    orchestrator = get_orchestrator()
    return await _dispatch(chat_id, lambda: orchestrator.submit_input(chat_id, request.value))


@router.post("/chat/{chat_id}/cancel", response_model=TurnResponse)
async def cancel(chat_id: str):
    orchestrator = get_orchestrator()
    return await _dispatch(chat_id, lambda: orchestrator.cancel(chat_id))


@router.post("/chat/{chat_id}/report", response_model=TurnResponse)
async def request_report(chat_id: str):
    orchestrator = get_orchestrator()
    return await _dispatch(chat_id, lambda: orchestrator.request_report(chat_id))


# ── Reads ─────────────────────────────────────────────────────────────


@router.get("/chat/{chat_id}/state")
async def get_state(chat_id: str):
    _validate_chat_id(chat_id)
    try:
        return get_orchestrator().get_state(chat_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Chat not found")


@router.get("/chat/{chat_id}/history", response_model=HistoryResponse)
async def get_history(chat_id: str):
    _validate_chat_id(chat_id)
    store = get_orchestrator().message_store
    if not store.validate_chat(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    return HistoryResponse(chat_id=chat_id, messages=store.get_history(chat_id))


@router.get("/chat/{chat_id}/related-questions/{message_id}", response_model=RelatedQuestionsResponse)
async def get_related_questions(chat_id: str, message_id: str):
    _validate_chat_id(chat_id)
    generator = get_orchestrator().related_questions
    questions = generator.get(message_id) if generator else None
    if questions is None:
        raise HTTPException(status_code=404, detail="No related questions for this message yet")
    return RelatedQuestionsResponse(questions=questions)


@router.post("/chat/related-questions", response_model=RelatedQuestionsResponse)
async def generate_related_questions(request: RelatedQuestionsRequest):
    if not request.userQuestion or not request.aiAnswer:
        raise HTTPException(status_code=400, detail="Missing required fields")
    generator = get_orchestrator().related_questions
    if generator is None:
        raise HTTPException(status_code=503, detail="Related questions are not configured")
    questions = await generator.generate(
        request.userQuestion, request.aiAnswer, request.kgContext, request.previousQuestions,
    )
    return RelatedQuestionsResponse(questions=questions)


@router.get("/chats", response_model=ChatListResponse)
async def list_chats(user_id: str):
    return ChatListResponse(chats=get_orchestrator().message_store.list_chats(user_id))


@router.get("/chats/search", response_model=ChatSearchResponse)
async def search_chats(user_id: str, q: str = ""):
    hits = get_orchestrator().message_store.search_messages(user_id, q)
    return ChatSearchResponse(hits=[
        ChatSearchHit(chat_id=chat.id, chat_title=chat.title, message=message) for chat, message in hits
    ])


@router.delete("/chat/{chat_id}")
async def delete_chat(chat_id: str):
    _validate_chat_id(chat_id)
    orchestrator = get_orchestrator()
    if not orchestrator.message_store.delete_chat(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    orchestrator.drop_session(chat_id)
    manager.disconnect(chat_id)
    return {"status": "deleted", "chat_id": chat_id}


@router.get("/health")
async def health():
    orchestrator = get_orchestrator()
    return {"status": "healthy", "active_sessions": len(orchestrator.sessions)}


# ── Session TTL ───────────────────────────────────────────────────────


async def _session_cleanup_loop():
    """Background task to drop sessions idle for longer than SESSION_TTL_HOURS."""
    while True:
        await asyncio.sleep(SESSION_CLEANUP_INTERVAL_SECONDS)
        try:
            expired = get_orchestrator().cleanup_idle_sessions(timedelta(hours=SESSION_TTL_HOURS))
            for chat_id in expired:
                manager.disconnect(chat_id)
            if expired:
                logger.info(
                    "Session cleanup: removed %d idle sessions, %d remaining",
                    len(expired), len(get_orchestrator().sessions),
                )
        except Exception as e:
            logger.error("Session cleanup error: %s", e)


def start_cleanup_task() -> asyncio.Task:
    """Start the session cleanup background loop."""
    return asyncio.create_task(_session_cleanup_loop())
