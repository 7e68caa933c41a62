import os
import time
from typing import Any

from anthropic import AsyncAnthropic
from mira.models.schemas import TokenUsage
from mira.utils.json_extract import extract_json
from mira.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MODEL = "claude-3-5-haiku-20241022"
DEFAULT_TIMEOUT = 60.0
_PREVIEW_CHARS = 2000


def _preview(text: str | None, limit: int) -> str | None:
    if text and len(text) > limit:
        return text[:limit] + "..."
    return text


class LLMResponse:
    """Text of one Claude reply plus the tokens it consumed."""
    def __init__(self, text: str, input_tokens: int, output_tokens: int):
        self.text = text
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens


class AnthropicClient:
    """Claude client shared by the answer, title and related-question calls.

    Token usage is accumulated per instance so each caller (``agent_name``)
    can report what it spent.
    """

    def __init__(
        self,
        agent_name: str = "unknown",
        model: str | None = None,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.agent_name = agent_name
        self.model = model or os.getenv("ANTHROPIC_MODEL", DEFAULT_MODEL)
        self._client = AsyncAnthropic(api_key=api_key or os.getenv("ANTHROPIC_API_KEY"), timeout=timeout)
        self._total_input_tokens = 0
        self._total_output_tokens = 0

    async def chat(
        self,
        prompt: str,
        system: str | None = None,
        messages: list[dict] | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.0,
    ) -> LLMResponse:
        """Single-turn completion; ``messages`` replaces ``prompt`` when given."""
        if messages is None:
            messages = [{"role": "user", "content": prompt}]

        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": messages,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        logger.info("LLM request", extra={
            "agent_name": self.agent_name,
            "action": "llm_call",
            "tool": self.model,
            "tokens": {"max_tokens": max_tokens},
            "extra": {
                "prompt": _preview(messages[-1].get("content") if messages else None, 300),
                "turns": len(messages),
                "temperature": temperature,
            },
        })

        start = time.monotonic()
        try:
            response = await self._client.messages.create(**kwargs)
        except Exception as e:
            logger.error("LLM call failed", extra={"agent_name": self.agent_name, "action": "llm_error", "extra": str(e)})
            raise

        result = self._to_response(response)
        logger.info("LLM reply", extra={
            "agent_name": self.agent_name,
            "action": "llm_response",
            "tokens": {"input": result.input_tokens, "output": result.output_tokens},
            "duration_ms": round((time.monotonic() - start) * 1000),
            "extra": {"response": _preview(result.text, _PREVIEW_CHARS), "stop_reason": response.stop_reason},
        })
        return result

    async def chat_json(self, prompt: str, system: str | None = None, **kwargs) -> Any:
        """Completion parsed as JSON; raises json.JSONDecodeError when nothing parses."""
        response = await self.chat(prompt, system=system, **kwargs)
        return extract_json(response.text)

    def _to_response(self, response) -> LLMResponse:
        usage = response.usage
        self._total_input_tokens += usage.input_tokens
        self._total_output_tokens += usage.output_tokens
        text = "".join(
            block.text for block in response.content if getattr(block, "text", None)
        ) if response.content else ""
        return LLMResponse(text=text, input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)

    def get_total_usage(self) -> TokenUsage:
        """Cumulative token usage for this client instance."""
        return TokenUsage(
            agent_name=self.agent_name,
            input_tokens=self._total_input_tokens,
            output_tokens=self._total_output_tokens,
            total_tokens=self._total_input_tokens + self._total_output_tokens,
        )

    def reset_usage(self) -> None:
        self._total_input_tokens = 0
        self._total_output_tokens = 0
