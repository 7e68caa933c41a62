"""
Related-question sidecar.

Proposes three follow-up questions for each AI answer. Generation is
best-effort: any failure or timeout yields the static fallback set, and
nothing here is ever surfaced to the user as an error.
"""

import asyncio
import json
from typing import Awaitable, Callable, Iterable, Optional

from mira.utils.logger import get_logger

logger = get_logger(__name__)

QUESTION_COUNT = 3
DEFAULT_TIMEOUT = 10.0

FALLBACK_QUESTIONS = (
    "What are the main attack vectors for this vulnerability?",
    "How do the prevention techniques work in practice?",
    "What are the latest tools for detecting this threat?",
)

SYSTEM_PROMPT = """You suggest follow-up questions for a cybersecurity assistant.
Given the user's question, the assistant's answer, optional knowledge-graph context
and the questions the user has already asked, propose exactly 3 short, specific
follow-up questions the user is likely to ask next. Do not repeat earlier questions.

Respond with JSON only: {"questions": ["...", "...", "..."]}"""


def _normalize(raw: list) -> list[str]:
    """Pad with fallbacks or truncate so exactly three questions remain."""
    questions = [q.strip() for q in raw if isinstance(q, str) and q.strip()]
    if len(questions) < QUESTION_COUNT:
        questions.extend(FALLBACK_QUESTIONS[: QUESTION_COUNT - len(questions)])
    return questions[:QUESTION_COUNT]


class RelatedQuestionGenerator:
    """Generates follow-up questions once per AI message id."""

    def __init__(
        self,
        llm_client,
        timeout: float = DEFAULT_TIMEOUT,
        on_ready: Optional[Callable[[Optional[str], str, list[str]], Awaitable[None]]] = None,
    ):
        self._llm = llm_client
        self._timeout = timeout
        self.on_ready = on_ready
        self._processed: set[str] = set()
        self._in_flight: set[str] = set()
        self._results: dict[str, list[str]] = {}
        self._tasks: set[asyncio.Task] = set()

    def get(self, message_id: str) -> Optional[list[str]]:
        return self._results.get(message_id)

    def forget(self, message_ids: Iterable[str]) -> None:
        """Drop cached results for messages whose chat is no longer live."""
        for message_id in message_ids:
            self._results.pop(message_id, None)
            self._processed.discard(message_id)

    def trigger(
        self,
        message_id: str,
        question: str,
        answer: str,
        context: str = "",
        previous_questions: Optional[list[str]] = None,
        chat_id: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule generation for ``message_id`` unless it is done or already running."""
        if message_id in self._processed or message_id in self._in_flight:
            return None
        self._in_flight.add(message_id)
        task = asyncio.create_task(
            self._run(message_id, question, answer, context, previous_questions or [], chat_id)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, message_id, question, answer, context, previous_questions, chat_id) -> None:
        try:
            questions = await self.generate(question, answer, context, previous_questions)
            self._results[message_id] = questions
            self._processed.add(message_id)
            if self.on_ready:
                await self.on_ready(chat_id, message_id, questions)
        except Exception as e:
            logger.warning("Related question delivery failed", extra={
                "chat_id": chat_id, "message_id": message_id,
                "action": "related_questions_failed", "extra": str(e),
            })
        finally:
            self._in_flight.discard(message_id)

    async def generate(
        self,
        question: str,
        answer: str,
        context: str = "",
        previous_questions: Optional[list[str]] = None,
    ) -> list[str]:
        """Return exactly three follow-up questions."""
        try:
            return await asyncio.wait_for(
                self._ask(question, answer, context, previous_questions or []),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Related question generation timed out", extra={"action": "related_questions_timeout", "extra": {"timeout": self._timeout}})
        except Exception as e:
            logger.warning("Related question generation failed", extra={"action": "related_questions_error", "extra": str(e)})
        return list(FALLBACK_QUESTIONS)

    async def _ask(self, question: str, answer: str, context: str, previous_questions: list[str]) -> list[str]:
        previous = "\n".join(f"- {q}" for q in previous_questions[-10:]) or "(none)"
        prompt = (
            f"User question:\n{question}\n\n"
            f"Assistant answer:\n{answer[:4000]}\n\n"
            f"Knowledge-graph context:\n{context[:2000] or '(none)'}\n\n"
            f"Previously asked:\n{previous}"
        )
        parsed = await self._llm.chat_json(prompt=prompt, system=SYSTEM_PROMPT, max_tokens=512, temperature=0.7)
        if isinstance(parsed, dict):
            parsed = parsed.get("questions", [])
        if not isinstance(parsed, list):
            raise ValueError(f"Unexpected related-question payload: {json.dumps(parsed)[:200]}")
        return _normalize(parsed)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
