"""
LLM answer service: cybersecurity answers with reasoning, jargon and sources.

The model is asked for a single JSON object; ``_parse_answer`` tolerates the
shapes the model tends to return (trace as string or list, jargons as list or
mapping) and falls back to treating the whole response as the answer text.
"""

import json

from mira.models.errors import ServiceError
from mira.models.schemas import (
    AnswerOption,
    AnswerPayload,
    Jargon,
    Personality,
    ReasoningStep,
    SourceLink,
)
from mira.utils.json_extract import extract_json
from mira.utils.llm_client import AnthropicClient
from mira.utils.logger import get_logger

logger = get_logger("answer_service")

DEFAULT_TITLE = "Chat"

PERSONALITY_PROMPTS = {
    Personality.TUTOR: (
        "You are Mira in tutor mode. Explain security concepts step by step for a learner, "
        "define terms as you introduce them and finish with a short recap."
    ),
    Personality.INVESTIGATOR: (
        "You are Mira in investigator mode. Treat the question as an incident: identify indicators, "
        "likely attack paths and the evidence that would confirm or rule them out."
    ),
    Personality.ANALYST: (
        "You are Mira in analyst mode. Give a concise risk assessment: affected assets, severity, "
        "exploitability, relevant CVEs and prioritised mitigations."
    ),
}

ANSWER_FORMAT = """
Respond with a single JSON object and nothing else:
{
  "answer": "<markdown answer>",
  "reasoning": "<one paragraph describing how you reached the answer>",
  "jargons": [{"term": "<term>", "description": "<plain-language definition>"}],
  "source_links": [{"title": "<title>", "url": "<https url>", "type": "reference"}],
  "dynamic_tag": "<one snake_case category, e.g. web_security, malware, network_security>",
  "options": []
}
Only fill "options" ([{"option": "...", "description": "..."}]) when the user must pick
one of several concrete next steps before you can continue."""

TITLE_PROMPT = (
    "Write a title of at most six words for a chat that starts with the message below. "
    "Return only the title, without quotes.\n\n{text}"
)


def _as_trace(raw) -> list[ReasoningStep]:
    if not raw:
        return []
    if isinstance(raw, str):
        return [ReasoningStep(narrative=raw)]
    if isinstance(raw, dict):
        return [ReasoningStep.model_validate(raw)]
    return [ReasoningStep(narrative=r) if isinstance(r, str) else ReasoningStep.model_validate(r) for r in raw]


def _as_jargons(raw) -> list[Jargon]:
    if not raw:
        return []
    if isinstance(raw, dict):
        return [Jargon(term=k, description=str(v)) for k, v in raw.items()]
    return [Jargon.model_validate(j) for j in raw if isinstance(j, dict) and "term" in j]


def _parse_answer(text: str) -> AnswerPayload:
    try:
        data = extract_json(text)
    except json.JSONDecodeError:
        return AnswerPayload(answer=text.strip())
    if not isinstance(data, dict) or not data.get("answer"):
        return AnswerPayload(answer=text.strip())

    tag = data.get("dynamic_tag") or data.get("dynamicTags")
    if isinstance(tag, list):
        tag = tag[0] if tag else None
    return AnswerPayload(
        answer=data["answer"],
        reasoning_trace=_as_trace(data.get("reasoning_trace") or data.get("trace") or data.get("reasoning")),
        jargons=_as_jargons(data.get("jargons")),
        source_links=[SourceLink.model_validate(s) for s in data.get("source_links") or [] if isinstance(s, dict)],
        dynamic_tag=tag,
        graph_data=data.get("graph_data"),
        options=[AnswerOption.model_validate(o) for o in data.get("options") or [] if isinstance(o, dict)],
    )


class AnswerService:
    """Answers freeform questions in the selected agent personality."""

    def __init__(self, llm_client: AnthropicClient | None = None):
        self._llm = llm_client or AnthropicClient(agent_name="answer_service")

    async def ask(
        self,
        message: str,
        personality: Personality | str = Personality.TUTOR,
        chat_id: str | None = None,
        message_id: str | None = None,
    ) -> AnswerPayload:
        try:
            personality = Personality(personality)
        except ValueError:
            personality = Personality.TUTOR
        system = PERSONALITY_PROMPTS[personality] + "\n" + ANSWER_FORMAT

        logger.info("Answering question", extra={
            "chat_id": chat_id, "message_id": message_id, "action": "ask",
            "extra": {"personality": personality.value},
        })
        response = await self._llm.chat(prompt=message, system=system, max_tokens=4096, temperature=0.3)
        if not response.text.strip():
            raise ServiceError("Empty answer from LLM")
        return _parse_answer(response.text)

    async def generate_title(self, text: str) -> str:
        """Short chat title for ``text``; "Chat" when generation fails."""
        try:
            response = await self._llm.chat(prompt=TITLE_PROMPT.format(text=text[:1000]), max_tokens=32)
        except Exception as e:
            logger.warning("Title generation failed", extra={"action": "generate_title", "extra": str(e)})
            return DEFAULT_TITLE
        title = response.text.strip().strip('"').strip()
        return title[:80] if title else DEFAULT_TITLE
