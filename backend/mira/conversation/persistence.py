"""
Message persistence contract.

AI turns are stored with a single reasoning narrative and a term -> description
jargon mapping. ``save_with_fallback`` is the only write path used by the
orchestrator: it stores the enriched payload, and on failure retries once with
the bare sender and text.
"""

from typing import Any, Optional

from mira.models.errors import PersistenceError
from mira.models.schemas import (
    AnswerPayload,
    Jargon,
    Message,
    MessageEnrichment,
    ReasoningStep,
)
from mira.utils.logger import get_logger

logger = get_logger(__name__)

MINIMAL_TEXT_LIMIT = 4000
DEFAULT_TAG = "cybersecurity_general"
DEFAULT_SEVERITY = "Medium"

RECONSTRUCTED_STEPS = (
    ("Step1", "Context retrieved from knowledge graph."),
    ("Step2", "Comprehensive analysis completed."),
    ("Step3", "Response generated using LLM with context."),
)


def extract_reasoning(trace: Any) -> Optional[str]:
    """Reduce a reasoning trace to its narrative string.

    A string is returned unchanged, a list yields its first element's
    ``narrative`` and a mapping (or model) yields its own ``narrative``.
    """
    if trace is None:
        return None
    if isinstance(trace, str):
        return trace
    if isinstance(trace, (list, tuple)):
        if not trace:
            return None
        return _narrative_of(trace[0])
    return _narrative_of(trace)


def _narrative_of(item: Any) -> Optional[str]:
    if isinstance(item, ReasoningStep):
        return item.narrative
    if isinstance(item, dict):
        value = item.get("narrative")
        return value if isinstance(value, str) else None
    return None


def rebuild_reasoning_trace(reasoning: Optional[str]) -> Optional[list[ReasoningStep]]:
    """Expand a stored narrative back into the four-step trace shown with reloaded messages."""
    if not reasoning:
        return None
    steps = [ReasoningStep(narrative=reasoning)]
    steps.extend(ReasoningStep(step=step, message=message) for step, message in RECONSTRUCTED_STEPS)
    return steps


def jargons_to_mapping(jargons: list[Jargon]) -> dict[str, str]:
    return {j.term: j.description for j in jargons}


def jargons_from_mapping(mapping: Optional[dict[str, str]]) -> Optional[list[Jargon]]:
    if not mapping:
        return None
    return [Jargon(term=term, description=description) for term, description in mapping.items()]


def enrichment_from_answer(payload: AnswerPayload, duration_sec: Optional[float] = None) -> MessageEnrichment:
    """Build the stored enrichment for an AI answer."""
    return MessageEnrichment(
        answer=payload.answer,
        reasoning=extract_reasoning(payload.reasoning_trace),
        jargons=jargons_to_mapping(payload.jargons),
        source_links=payload.source_links,
        tags=[payload.dynamic_tag or DEFAULT_TAG],
        severity=DEFAULT_SEVERITY,
        duration_sec=duration_sec,
        graph_data=payload.graph_data,
    )


def enrichment_for_message(message: Message) -> Optional[MessageEnrichment]:
    """Human-in-the-loop annotations carried by a scripted message, if any."""
    if not (message.action_type or message.confirm_type or message.human_in_the_loop_message):
        return None
    return MessageEnrichment(
        action_type=message.action_type,
        confirm_type=message.confirm_type,
        human_in_the_loop_message=message.human_in_the_loop_message,
    )


def save_with_fallback(store, message: Message, enrichment: Optional[MessageEnrichment] = None) -> str:
    """Persist ``message``; on failure retry once with a minimal payload.

    Raises:
        PersistenceError: if the minimal save also fails.
    """
    if message.chat_id is None:
        raise PersistenceError(f"Message {message.id} has no chat id")
    if enrichment is None:
        enrichment = enrichment_for_message(message)
    try:
        return store.save_message(
            message.chat_id,
            message.sender,
            message.text,
            enrichment=enrichment,
            message_id=message.id,
        )
    except Exception as e:
        logger.warning("Enriched save failed, retrying with minimal payload", extra={
            "chat_id": message.chat_id,
            "message_id": message.id,
            "action": "save_message_fallback",
            "extra": str(e),
        })

    try:
        return store.save_message(
            message.chat_id,
            message.sender,
            message.text[:MINIMAL_TEXT_LIMIT],
            enrichment=None,
            message_id=message.id,
        )
    except Exception as e:
        logger.error("Minimal save failed", extra={
            "chat_id": message.chat_id,
            "message_id": message.id,
            "action": "save_message_failed",
            "extra": str(e),
        })
        raise PersistenceError(f"Could not persist message {message.id}: {e}") from e
