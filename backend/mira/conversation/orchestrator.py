"""
Conversational workflow orchestrator.

Routes each user turn either to a freeform LLM answer or into the
human-in-the-loop dialogue (scan type, compliance standard, report approval,
folder selection or creation, file naming) and persists both sides of every
turn. Each chat has one ``ChatSession`` whose ``DialogueState`` is the single
source of truth for the open step; turns for the same chat are serialised by
the session lock, while ``cancel`` bypasses the lock and cancels the turn in
flight.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

from mira.conversation import prompts
from mira.conversation.intent import classify, extract_urls
from mira.conversation.persistence import (
    DEFAULT_TAG,
    enrichment_from_answer,
    extract_reasoning,
    save_with_fallback,
)
from mira.conversation.progress import (
    DEFAULT_STEP_DELAY,
    REPORT_STEPS,
    SCAN_STEPS,
    ProgressTracker,
    run_with_progress,
)
from mira.conversation.related_questions import RelatedQuestionGenerator
from mira.conversation.state import DialogueState
from mira.integrations.folder_store import FolderExistsError
from mira.models.errors import DialogueStateError, PersistenceError, ServiceError, UnexpectedReplyError
from mira.models.schemas import (
    ActionPrompt,
    ConfirmType,
    DialogueAction,
    Intent,
    Message,
    MessageEnrichment,
    Personality,
    RequestHumanInLoop,
    Sender,
    new_id,
)
from mira.utils.event_emitter import EventEmitter
from mira.utils.logger import get_logger

logger = get_logger(__name__)

YES_WORDS = {"yes", "y", "ok", "okay", "approve", "sure"}
NO_WORDS = {"no", "n", "cancel", "reject"}

# Busy marker held between the steps of one turn
TRANSITION = "transition"

OPTION_ACTIONS = {
    DialogueAction.SCAN,
    DialogueAction.GITHUB_SCAN,
    DialogueAction.STANDARDS,
    DialogueAction.REPORT,
    DialogueAction.FOLDER,
    DialogueAction.FOLDER_SAST,
    DialogueAction.SAVE_CHAT_SUMMARY,
    DialogueAction.RANDOM,
}
INPUT_ACTIONS = {DialogueAction.INPUT, DialogueAction.SAST_INPUT}

# Folder-selection step -> (prompt type for its options, input step that follows)
FOLDER_STEPS = {
    DialogueAction.FOLDER: (prompts.FOLDER_TYPE_SCAN, ConfirmType.CREATE_FILE.value),
    DialogueAction.FOLDER_SAST: (prompts.FOLDER_TYPE_SAST, ConfirmType.SAST_SUMMARY_CREATE_FILE.value),
    DialogueAction.SAVE_CHAT_SUMMARY: (prompts.FOLDER_TYPE_CHAT, ConfirmType.CHAT_SUMMARY_CREATE_FILE.value),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def mask_secret(value: str) -> str:
    """Hide all but the last four characters of a credential."""
    value = value.strip()
    if len(value) <= 4:
        return "*" * 4
    return "*" * (len(value) - 4) + value[-4:]


@dataclass
class ChatSession:
    user_id: str
    emitter: EventEmitter
    chat_id: Optional[str] = None
    personality: Personality = Personality.TUTOR
    state: DialogueState = field(default_factory=DialogueState)
    transcript: list[Message] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_activity: datetime = field(default_factory=_now)
    # URL from the most recent routed message, used by the report menu
    target_url: Optional[str] = None
    active_task: Optional[asyncio.Task] = None

    def touch(self) -> None:
        self.last_activity = _now()


@dataclass
class TurnResult:
    chat_id: Optional[str]
    messages: list[Message]
    state: dict


@dataclass
class _Turn:
    """Bookkeeping for one transition: messages it added and the epoch it started in."""
    session: ChatSession
    epoch: int
    added: list[Message] = field(default_factory=list)

    @property
    def stale(self) -> bool:
        return self.session.state.epoch != self.epoch


class ChatOrchestrator:
    """Drives chat turns and the human-in-the-loop workflows for every chat."""

    def __init__(
        self,
        message_store,
        folder_store,
        answer_service,
        scan_client,
        artifact_triggers=None,
        related_questions: Optional[RelatedQuestionGenerator] = None,
        emitter_factory: Optional[Callable[[str], EventEmitter]] = None,
        step_delay: float = DEFAULT_STEP_DELAY,
    ):
        self._messages = message_store
        self._folders = folder_store
        self._answers = answer_service
        self._scans = scan_client
        self._triggers = artifact_triggers
        self._related = related_questions
        self._emitter_factory = emitter_factory or (lambda chat_id: EventEmitter(chat_id))
        self._step_delay = step_delay
        self._sessions: dict[str, ChatSession] = {}
        self._background: set[asyncio.Task] = set()
        if self._related is not None and self._related.on_ready is None:
            self._related.on_ready = self._publish_related

    # ── Sessions ──────────────────────────────────────────────────────

    @property
    def sessions(self) -> dict[str, ChatSession]:
        return self._sessions

    @property
    def message_store(self):
        return self._messages

    @property
    def related_questions(self) -> Optional[RelatedQuestionGenerator]:
        return self._related

    def get_session(self, chat_id: str) -> ChatSession:
        """Return the live session for ``chat_id``, restoring it from the store if needed.

        Raises:
            KeyError: if the chat does not exist.
        """
        session = self._sessions.get(chat_id)
        if session is not None:
            return session
        chat = self._messages.get_chat(chat_id)
        if chat is None:
            raise KeyError(chat_id)
        session = ChatSession(
            user_id=chat.user_id,
            emitter=self._emitter_factory(chat_id),
            chat_id=chat_id,
            transcript=self._messages.get_history(chat_id),
        )
        self._sessions[chat_id] = session
        return session

    def new_session(self, user_id: str) -> ChatSession:
        """Session for a chat that does not exist yet; registered once ``ensure_chat`` runs."""
        return ChatSession(user_id=user_id, emitter=self._emitter_factory("pending"))

    def drop_session(self, chat_id: str) -> None:
        session = self._sessions.pop(chat_id, None)
        if session is None:
            return
        if session.active_task and not session.active_task.done():
            session.active_task.cancel()
        self._forget(session)

    def cleanup_idle_sessions(self, max_age: timedelta) -> list[str]:
        """Drop sessions idle for longer than ``max_age`` that have no turn running."""
        cutoff = _now() - max_age
        expired = [
            cid for cid, s in self._sessions.items()
            if s.last_activity < cutoff and not s.lock.locked()
        ]
        for cid in expired:
            self._forget(self._sessions.pop(cid))
        return expired

    def _forget(self, session: ChatSession) -> None:
        """Release per-message sidecar bookkeeping held for a dropped session."""
        message_ids = [m.id for m in session.transcript]
        if self._related is not None:
            self._related.forget(message_ids)
        if self._triggers is not None:
            self._triggers.forget(message_ids)

    async def ensure_chat(self, session: ChatSession, seed_text: str) -> str:
        """Create the chat for ``session`` unless it already has one; returns the chat id.

        Turns recorded before the chat existed are stamped with the new id
        and persisted.
        """
        if session.chat_id:
            return session.chat_id
        try:
            title = await self._answers.generate_title(seed_text)
        except Exception as e:
            logger.warning("Title generation failed", extra={"user_id": session.user_id, "action": "generate_title", "extra": str(e)})
            title = "Chat"
        chat_id = self._messages.create_chat(session.user_id, title or "Chat", tags=[DEFAULT_TAG])
        session.chat_id = chat_id
        session.emitter.rebind(chat_id)
        self._sessions[chat_id] = session
        for i, message in enumerate(session.transcript):
            if message.chat_id is None:
                session.transcript[i] = message.model_copy(update={"chat_id": chat_id})
                await self._persist(session, session.transcript[i])
        return chat_id

    # ── Entry points ──────────────────────────────────────────────────

    async def handle_message(
        self,
        chat_id: Optional[str],
        user_id: str,
        text: str,
        personality: Personality | str = Personality.TUTOR,
    ) -> TurnResult:
        """Process one free-text user turn."""
        session = self.get_session(chat_id) if chat_id else self.new_session(user_id)
        try:
            session.personality = Personality(personality)
        except ValueError:
            session.personality = Personality.TUTOR

        async def run(turn: _Turn) -> None:
            state = session.state
            secret = state.expects(DialogueAction.SAST_INPUT) and text.strip().lower() != "cancel"
            shown = mask_secret(text) if secret else text
            # Recorded before the chat exists so a failed create still returns it
            await self._record(turn, Sender.USER, shown)
            if session.chat_id is None:
                await self.ensure_chat(session, text)
                stamped = {m.id: m for m in session.transcript}
                turn.added[:] = [stamped.get(m.id, m) for m in turn.added]
            if state.is_open:
                await self._reply_to_open_step(turn, text)
            else:
                await self._route(turn, text)

        return await self._run_turn(session, run)

    async def choose_option(self, chat_id: str, name: str, option_id: Optional[str] = None) -> TurnResult:
        """Answer an open option-list step."""
        session = self.get_session(chat_id)

        def check(state: DialogueState) -> None:
            if state.action_type not in OPTION_ACTIONS:
                raise UnexpectedReplyError("No option list is awaiting a choice")
            if state.find_prompt(name, option_id) is None:
                raise UnexpectedReplyError(f"{name!r} is not one of the offered options")

        async def run(turn: _Turn) -> None:
            prompt = session.state.find_prompt(name, option_id)
            await self._record(turn, Sender.USER, prompt.name)
            await self._choose(turn, prompt)

        return await self._run_turn(session, run, check)

    async def approve(self, chat_id: str, yes: bool) -> TurnResult:
        """Answer an open yes/no approval step."""
        session = self.get_session(chat_id)

        def check(state: DialogueState) -> None:
            if state.action_type != DialogueAction.APPROVAL:
                raise UnexpectedReplyError("No approval is pending")

        async def run(turn: _Turn) -> None:
            await self._record(turn, Sender.USER, "Yes" if yes else "No")
            await self._approve(turn, yes)

        return await self._run_turn(session, run, check)

    async def submit_input(self, chat_id: str, value: str) -> TurnResult:
        """Answer an open text-input step (folder name, file name or access token)."""
        session = self.get_session(chat_id)

        def check(state: DialogueState) -> None:
            if state.action_type not in INPUT_ACTIONS:
                raise UnexpectedReplyError("No text input is pending")

        async def run(turn: _Turn) -> None:
            secret = session.state.action_type == DialogueAction.SAST_INPUT
            await self._record(turn, Sender.USER, mask_secret(value) if secret else value)
            await self._submit(turn, value)

        return await self._run_turn(session, run, check)

    async def request_report(self, chat_id: str) -> TurnResult:
        """Open the report-type menu."""
        session = self.get_session(chat_id)

        def check(state: DialogueState) -> None:
            if not state.is_idle:
                raise UnexpectedReplyError("Another step is still open")

        async def run(turn: _Turn) -> None:
            await self._ask(turn, DialogueAction.REPORT, prompts.MSG_REPORT_PROMPT,
                            prompt_list=prompts.REPORT_TYPES)

        return await self._run_turn(session, run, check)

    async def cancel(self, chat_id: str) -> TurnResult:
        """Abandon the open step or running operation immediately.

        Does not wait for the session lock: the turn in flight is cancelled
        and anything it produces afterwards is discarded.
        """
        session = self.get_session(chat_id)
        session.touch()
        state = session.state
        if state.is_idle:
            return TurnResult(session.chat_id, [], state.snapshot())

        turn = _Turn(session, state.epoch)
        await self._record(turn, Sender.USER, "No")
        await self._say(turn, prompts.MSG_CANCELLED)
        task = session.active_task
        state.reset()
        if task is not None and not task.done():
            task.cancel()
        logger.info("Dialogue cancelled", extra={"chat_id": session.chat_id, "action": "cancel"})
        await session.emitter.emit("state", state.snapshot())
        return TurnResult(session.chat_id, turn.added, state.snapshot())

    def get_state(self, chat_id: str) -> dict:
        return self.get_session(chat_id).state.snapshot()

    async def drain(self) -> None:
        """Wait for background persistence and sidecar work to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._related is not None:
            await self._related.drain()

    # ── Turn boundary ─────────────────────────────────────────────────

    async def _run_turn(
        self,
        session: ChatSession,
        handler: Callable[[_Turn], Awaitable[None]],
        check: Optional[Callable[[DialogueState], None]] = None,
    ) -> TurnResult:
        async with session.lock:
            session.touch()
            if check is not None:
                check(session.state)
            turn = _Turn(session, session.state.epoch)
            # Non-idle for the whole transition so cancel always has something to abandon
            session.state.busy = TRANSITION
            task = asyncio.ensure_future(self._guarded(turn, handler))
            session.active_task = task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    task.cancel()
                    raise
                logger.info("Turn cancelled in flight", extra={"chat_id": session.chat_id, "action": "turn_cancelled"})
            finally:
                session.active_task = None
                if session.state.busy == TRANSITION:
                    session.state.busy = None
                session.touch()
        await session.emitter.emit("state", session.state.snapshot())
        return TurnResult(session.chat_id, turn.added, session.state.snapshot())

    async def _guarded(self, turn: _Turn, handler: Callable[[_Turn], Awaitable[None]]) -> None:
        """Run one transition; any failure becomes an apology and a reset to freeform."""
        try:
            await handler(turn)
        except Exception as e:
            logger.error("Transition failed", exc_info=True, extra={
                "chat_id": turn.session.chat_id, "action": "transition_failed", "extra": str(e),
            })
            if turn.stale:
                return
            await self._say(turn, prompts.MSG_ERROR)
            turn.session.state.reset()

    # ── Message helpers ───────────────────────────────────────────────

    async def _record(
        self,
        turn: _Turn,
        sender: Sender,
        text: str,
        message_id: Optional[str] = None,
        **annotations,
    ) -> Optional[Message]:
        """Append a turn to the transcript and persist it; dropped if the turn went stale."""
        if turn.stale:
            logger.info("Discarding message from stale turn", extra={"chat_id": turn.session.chat_id, "action": "discard_stale"})
            return None
        session = turn.session
        message = Message(
            id=message_id or new_id(),
            chat_id=session.chat_id,
            sender=sender,
            text=text,
            **annotations,
        )
        session.transcript.append(message)
        turn.added.append(message)
        await self._persist(session, message)
        await session.emitter.emit("message", message.model_dump(mode="json"))
        return message

    async def _say(self, turn: _Turn, text: str, message_id: Optional[str] = None, **annotations) -> Optional[Message]:
        return await self._record(turn, Sender.AI, text, message_id=message_id, **annotations)

    async def _persist(self, session: ChatSession, message: Message, enrichment: Optional[MessageEnrichment] = None) -> None:
        if message.chat_id is None:
            # Held in the transcript until ensure_chat assigns an id
            return
        try:
            save_with_fallback(self._messages, message, enrichment)
        except PersistenceError as e:
            logger.error("Message kept in transcript only", extra={"chat_id": session.chat_id, "message_id": message.id, "action": "persist_failed", "extra": str(e)})
            await session.emitter.emit("toast", {"level": "error", "message": "Failed to save message."})

    async def _ask(
        self,
        turn: _Turn,
        action: DialogueAction,
        text: str,
        confirm_type: str = ConfirmType.NONE.value,
        prompt_list: Optional[list[ActionPrompt]] = None,
        headline: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Optional[Message]:
        """Emit a scripted prompt and open the dialogue step that waits on it."""
        if turn.stale:
            return None
        prompt_list = prompt_list or []
        headline = headline or prompts.headline_for(action, text)
        message = await self._say(
            turn, text,
            message_id=message_id,
            action_type=action.value,
            confirm_type=confirm_type,
            human_in_the_loop_message=headline,
            action_prompts=prompt_list,
        )
        if message is None:
            return None
        turn.session.state.open(
            RequestHumanInLoop(action=action, prompt=text, type=confirm_type, id=message.id),
            prompt_list,
            headline,
        )
        return message

    def _tracker(self, session: ChatSession, label: str) -> ProgressTracker:
        async def on_change(value: float, lbl: str) -> None:
            await session.emitter.emit("progress", {"value": value, "label": lbl})
        return ProgressTracker(label=label, on_change=on_change)

    async def _stream_message(self, turn: _Turn, chunks: AsyncIterator[str]) -> Optional[str]:
        """Collect a streamed AI reply, forwarding chunks as they arrive."""
        message_id = new_id()
        parts: list[str] = []
        async for chunk in chunks:
            if turn.stale:
                return None
            parts.append(chunk)
            await turn.session.emitter.emit("chunk", {"message_id": message_id, "chunk": chunk})
        text = "".join(parts).strip()
        if not text:
            raise ServiceError("Streamed reply was empty")
        await self._say(turn, text, message_id=message_id)
        return text

    # ── Routing ───────────────────────────────────────────────────────

    async def _route(self, turn: _Turn, text: str) -> None:
        session = turn.session
        intent = classify(text)
        urls = extract_urls(text)
        session.target_url = urls[0] if urls else None
        logger.info("Message routed", extra={"chat_id": session.chat_id, "action": "route", "extra": {"intent": intent.value}})

        if intent == Intent.GITHUB_URL_SCAN:
            session.state.context.target_url = session.target_url
            await self._ask(turn, DialogueAction.GITHUB_SCAN, prompts.MSG_GITHUB_URL_RECEIVED,
                            prompt_list=prompts.REPOSITORY_TYPES)
        elif intent == Intent.PLAIN_URL_SCAN:
            session.state.context.target_url = session.target_url
            await self._ask(turn, DialogueAction.SCAN, prompts.MSG_URL_RECEIVED,
                            prompt_list=prompts.SCAN_TYPES)
        else:
            # negation, clarification and freeform all get an LLM answer
            await self._freeform(turn, text)

    async def _reply_to_open_step(self, turn: _Turn, text: str) -> None:
        state = turn.session.state
        lowered = text.strip().lower()
        if lowered == "cancel":
            await self._cancel_in_turn(turn)
            return

        if state.action_type == DialogueAction.APPROVAL:
            if lowered in YES_WORDS:
                await self._approve(turn, True)
            elif lowered in NO_WORDS:
                await self._approve(turn, False)
            else:
                await self._say(turn, prompts.MSG_YES_OR_NO)
        elif state.action_type in INPUT_ACTIONS:
            await self._submit(turn, text)
        else:
            prompt = state.find_prompt(text)
            if prompt is None:
                await self._say(turn, prompts.MSG_PICK_AN_OPTION)
            else:
                await self._choose(turn, prompt)

    async def _cancel_in_turn(self, turn: _Turn) -> None:
        await self._say(turn, prompts.MSG_CANCELLED)
        turn.session.state.reset()

    # ── Option choices ────────────────────────────────────────────────

    async def _choose(self, turn: _Turn, prompt: ActionPrompt) -> None:
        state = turn.session.state
        ctx = state.context
        action = state.action_type

        if action in FOLDER_STEPS:
            await self._choose_folder(turn, action, prompt)
            return

        state.resolve()
        if action == DialogueAction.SCAN:
            ctx.scan_type = prompt.name
            await self._ask(turn, DialogueAction.STANDARDS, prompts.MSG_SCAN_TYPE_RECEIVED,
                            prompt_list=prompts.STANDARDS)
        elif action == DialogueAction.STANDARDS:
            await self._run_dast_scan(turn, prompt.name)
        elif action == DialogueAction.GITHUB_SCAN:
            if prompt.id == "private":
                ctx.repo_type = "private"
                await self._ask(turn, DialogueAction.SAST_INPUT, prompts.MSG_REPO_TYPE_RECEIVED,
                                confirm_type=ConfirmType.GITHUB_SCAN.value)
            else:
                ctx.repo_type = "public"
                await self._run_sast_scan(turn, None)
        elif action == DialogueAction.REPORT:
            await self._choose_report(turn, prompt)
        elif action == DialogueAction.RANDOM:
            # The chosen option is answered like a typed question
            await self._freeform(turn, prompt.name)
        else:
            raise DialogueStateError(f"No handler for option step {action}")

    async def _choose_report(self, turn: _Turn, prompt: ActionPrompt) -> None:
        session = turn.session
        if prompt.name == prompts.CHAT_SUMMARY_REPORT:
            await self._run_chat_summary(turn)
            return
        if not session.target_url:
            await self._say(turn, prompts.MSG_REPORT_TYPE_RECEIVED)
            await self._say(turn, prompts.MSG_NEED_URL)
            session.state.reset()
            return
        session.state.context.target_url = session.target_url
        session.state.context.scan_type = session.state.context.scan_type or prompts.SCAN_TYPES[0].name
        await self._ask(turn, DialogueAction.STANDARDS, prompts.MSG_REPORT_TYPE_RECEIVED,
                        prompt_list=prompts.STANDARDS)

    async def _choose_folder(self, turn: _Turn, action: DialogueAction, prompt: ActionPrompt) -> None:
        state = turn.session.state
        ctx = state.context
        _, next_input = FOLDER_STEPS[action]
        state.resolve()
        if prompt.name == prompts.CREATE_NEW_FOLDER:
            ctx.next_input_type = next_input
            await self._ask(turn, DialogueAction.INPUT, prompts.MSG_FOLDER_NAME_PROMPT,
                            confirm_type=ConfirmType.CREATE_FOLDER.value,
                            headline=prompts.MSG_FOLDER_NAME_PROMPT)
        else:
            ctx.folder_id = prompt.id
            await self._ask(turn, DialogueAction.INPUT, prompts.MSG_FILE_NAME_PROMPT, confirm_type=next_input)

    # ── Approvals ─────────────────────────────────────────────────────

    async def _approve(self, turn: _Turn, yes: bool) -> None:
        if not yes:
            await self._cancel_in_turn(turn)
            return

        session = turn.session
        state = session.state
        ctx = state.context
        confirm = state.confirm_type
        state.resolve()

        if confirm == ConfirmType.REPORT.value:
            if ctx.scan_result is None:
                raise DialogueStateError("No scan result to summarise")
            state.busy = "summary"
            await self._stream_message(turn, self._scans.stream_report(ctx.scan_result))
            self._clear_busy(turn)
            await self._ask(turn, DialogueAction.APPROVAL, prompts.MSG_ASK_SAVE, confirm_type=ConfirmType.SAVE.value)
        elif confirm == ConfirmType.SAST_REPORT.value:
            if ctx.sast_result is None:
                raise DialogueStateError("No SAST result to summarise")
            state.busy = "summary"
            await self._stream_message(turn, self._scans.stream_sast_report(ctx.sast_result))
            self._clear_busy(turn)
            await self._ask(turn, DialogueAction.APPROVAL, prompts.MSG_ASK_SAVE,
                            confirm_type=ConfirmType.SAVE_SAST_SUMMARY.value)
        elif confirm == ConfirmType.SAVE.value:
            await self._ask_folder(turn, DialogueAction.FOLDER, prompts.MSG_FOLDER_PROMPT, ConfirmType.NONE.value)
        elif confirm == ConfirmType.SAVE_SAST_SUMMARY.value:
            await self._ask_folder(turn, DialogueAction.FOLDER_SAST, prompts.MSG_FOLDER_PROMPT + ".", ConfirmType.NONE.value)
        elif confirm == ConfirmType.SAVE_CHAT_SUMMARY.value:
            await self._ask_folder(turn, DialogueAction.SAVE_CHAT_SUMMARY, prompts.MSG_FOLDER_PROMPT + ".",
                                   ConfirmType.SUMMARY.value)
        else:
            raise DialogueStateError(f"No handler for approval type {confirm}")

    async def _ask_folder(self, turn: _Turn, action: DialogueAction, text: str, confirm_type: str) -> None:
        folder_type, _ = FOLDER_STEPS[action]
        folders = self._folders.list_folders(turn.session.user_id)
        await self._ask(turn, action, text, confirm_type=confirm_type,
                        prompt_list=prompts.folder_prompts(folders, folder_type))

    # ── Text inputs ───────────────────────────────────────────────────

    async def _submit(self, turn: _Turn, value: str) -> None:
        session = turn.session
        state = session.state
        ctx = state.context
        confirm = state.confirm_type
        value = value.strip()

        if not value:
            await self._say(turn, state.human_in_the_loop_message or prompts.MSG_FILE_NAME_PROMPT)
            return

        if confirm == ConfirmType.CREATE_FOLDER.value:
            try:
                folder = self._folders.create_folder(session.user_id, value)
            except FolderExistsError:
                await self._say(turn, prompts.MSG_FOLDER_EXISTS)
                return
            state.resolve()
            ctx.folder_id = folder.id
            await self._say(turn, prompts.folder_created(folder.name))
            await self._ask(turn, DialogueAction.INPUT, prompts.MSG_FILE_NAME_PROMPT,
                            confirm_type=ctx.next_input_type or ConfirmType.CREATE_FILE.value)
            return

        state.resolve()
        if confirm == ConfirmType.GITHUB_SCAN.value:
            await self._run_sast_scan(turn, value)
        elif confirm == ConfirmType.CREATE_FILE.value:
            if ctx.scan_result is None:
                raise DialogueStateError("No scan result to report on")
            await self._save_report(turn, value, self._scans.detailed_report(ctx.scan_result),
                                    prompts.REPORT_TYPE_VULNERABILITY)
        elif confirm == ConfirmType.SAST_SUMMARY_CREATE_FILE.value:
            if ctx.sast_result is None:
                raise DialogueStateError("No SAST result to report on")
            await self._save_report(turn, value, self._scans.detailed_sast_report(ctx.sast_result),
                                    prompts.REPORT_TYPE_VULNERABILITY)
        elif confirm == ConfirmType.CHAT_SUMMARY_CREATE_FILE.value:
            if not ctx.chat_summary:
                raise ServiceError("No chat summary available")
            await self._store_artifact(turn, value, ctx.chat_summary, prompts.REPORT_TYPE_CHAT_SUMMARY)
        else:
            raise DialogueStateError(f"No handler for input type {confirm}")

    # ── Long-running operations ───────────────────────────────────────

    def _clear_busy(self, turn: _Turn) -> None:
        if not turn.stale:
            turn.session.state.busy = TRANSITION

    async def _run_dast_scan(self, turn: _Turn, standard: str) -> None:
        session = turn.session
        ctx = session.state.context
        if not ctx.target_url:
            raise DialogueStateError("No target URL to scan")
        session.state.busy = "scan"
        tracker = self._tracker(session, "Scanning in progress...")
        result = await run_with_progress(
            self._scans.scan(ctx.target_url, standard, ctx.scan_type or prompts.SCAN_TYPES[0].name, session.user_id),
            tracker, SCAN_STEPS, self._step_delay,
        )
        if turn.stale:
            return
        self._clear_busy(turn)
        ctx.scan_result = result
        await self._say(turn, prompts.scan_summary(result.compliance_standard_url or standard, result.total_issues))
        await self._ask(turn, DialogueAction.APPROVAL, prompts.MSG_ASK_SUMMARY, confirm_type=ConfirmType.REPORT.value)

    async def _run_sast_scan(self, turn: _Turn, token: Optional[str]) -> None:
        session = turn.session
        ctx = session.state.context
        if not ctx.target_url:
            raise DialogueStateError("No repository URL to scan")
        session.state.busy = "sast-scan"
        tracker = self._tracker(session, "Scanning in progress...")
        result = await run_with_progress(
            self._scans.scan_repo(ctx.target_url, ctx.repo_type or "public", token, session.user_id),
            tracker, SCAN_STEPS, self._step_delay,
        )
        if turn.stale:
            return
        self._clear_busy(turn)
        ctx.sast_result = result
        await self._say(turn, prompts.sast_summary(len(result.issues), len(result.hotspots)))
        await self._ask(turn, DialogueAction.APPROVAL, prompts.MSG_ASK_SUMMARY,
                        confirm_type=ConfirmType.SAST_REPORT.value)

    async def _run_chat_summary(self, turn: _Turn) -> None:
        session = turn.session
        session.state.busy = "summary"
        history = [m.text for m in session.transcript]
        summary = await self._stream_message(turn, self._scans.stream_chat_summary(history))
        if summary is None or turn.stale:
            return
        self._clear_busy(turn)
        session.state.context.chat_summary = summary
        await self._ask(turn, DialogueAction.APPROVAL, prompts.MSG_ASK_SAVE_CHAT_SUMMARY,
                        confirm_type=ConfirmType.SAVE_CHAT_SUMMARY.value)

    async def _save_report(self, turn: _Turn, name: str, call: Awaitable[str], report_type: str) -> None:
        session = turn.session
        session.state.busy = "report"
        tracker = self._tracker(session, "Generating report")
        markdown = await run_with_progress(call, tracker, REPORT_STEPS, self._step_delay)
        if turn.stale:
            return
        await self._store_artifact(turn, name, markdown, report_type)

    async def _store_artifact(self, turn: _Turn, name: str, markdown: str, report_type: str) -> None:
        session = turn.session
        ctx = session.state.context
        if not ctx.folder_id:
            raise DialogueStateError("No folder selected")
        artifact_id = self._folders.save_artifact(ctx.folder_id, name, markdown, report_type)
        await self._say(turn, prompts.report_saved(artifact_id))
        # Terminal step: back to freeform
        session.state.reset()

    # ── Freeform answers ──────────────────────────────────────────────

    async def _freeform(self, turn: _Turn, text: str) -> None:
        session = turn.session
        ai_id = new_id()
        start = time.monotonic()
        try:
            payload = await self._answers.ask(text, session.personality, session.chat_id, ai_id)
        except Exception as e:
            logger.error("Answer service failed", extra={"chat_id": session.chat_id, "message_id": ai_id, "action": "ask_failed", "extra": str(e)})
            await session.emitter.emit("toast", {"level": "error", "message": prompts.MSG_ANSWER_FAILED})
            return
        if turn.stale:
            return
        duration = round(time.monotonic() - start, 2)
        tag = payload.dynamic_tag or DEFAULT_TAG

        annotations = {}
        option_list = prompts.option_prompts(payload.options) if payload.options else []
        if option_list:
            annotations = {
                "action_type": DialogueAction.RANDOM.value,
                "confirm_type": ConfirmType.NONE.value,
                "human_in_the_loop_message": prompts.headline_for(DialogueAction.RANDOM, payload.answer),
                "action_prompts": option_list,
            }
        message = Message(
            id=ai_id,
            chat_id=session.chat_id,
            sender=Sender.AI,
            text=payload.answer,
            reasoning_trace=payload.reasoning_trace or None,
            jargons=payload.jargons or None,
            source_links=payload.source_links or None,
            tags=[tag],
            duration_sec=duration,
            **annotations,
        )
        session.transcript.append(message)
        turn.added.append(message)
        await session.emitter.emit("message", message.model_dump(mode="json"))

        enrichment = enrichment_from_answer(payload, duration)
        if option_list:
            enrichment = enrichment.model_copy(update={
                "action_type": annotations["action_type"],
                "confirm_type": annotations["confirm_type"],
                "human_in_the_loop_message": annotations["human_in_the_loop_message"],
            })
        self._spawn(self._persist_answer(session, message, enrichment, tag))
        self._start_sidecars(session, message, text, payload)

        if option_list:
            session.state.open(
                RequestHumanInLoop(action=DialogueAction.RANDOM, prompt=prompts.MSG_OPTIONS_COMPLETED, id=ai_id),
                option_list,
                annotations["human_in_the_loop_message"],
            )

    async def _persist_answer(self, session: ChatSession, message: Message, enrichment: MessageEnrichment, tag: str) -> None:
        await self._persist(session, message, enrichment)
        try:
            self._messages.add_chat_tag(message.chat_id, tag)
        except Exception as e:
            logger.warning("Could not tag chat", extra={"chat_id": message.chat_id, "action": "add_chat_tag", "extra": str(e)})

    def _start_sidecars(self, session: ChatSession, message: Message, question: str, payload) -> None:
        if self._triggers is not None:
            self._spawn(self._triggers.trigger_graph(session.chat_id, message.id, question, payload.answer))
            self._spawn(self._triggers.trigger_todo(session.chat_id, message.id, payload.answer))
        if self._related is not None:
            previous = [m.text for m in session.transcript if m.sender == Sender.USER]
            self._related.trigger(
                message.id,
                question=question,
                answer=payload.answer,
                context=extract_reasoning(payload.reasoning_trace) or "",
                previous_questions=previous,
                chat_id=session.chat_id,
            )

    async def _publish_related(self, chat_id: Optional[str], message_id: str, questions: list[str]) -> None:
        session = self._sessions.get(chat_id) if chat_id else None
        if session is None:
            return
        await session.emitter.emit("related_questions", {"message_id": message_id, "questions": questions})

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
