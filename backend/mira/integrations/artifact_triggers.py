"""
Fire-and-forget triggers for derived artifacts (knowledge graph, TODO list).

Each trigger runs at most once per message id. Failures are logged and
swallowed; they never affect the chat turn that caused them.
"""

from typing import Iterable, Optional

import httpx

from mira.utils.logger import get_logger

logger = get_logger("artifact_triggers")

TRIGGER_TIMEOUT = 30.0


class ArtifactTriggerClient:
    """Posts completed answers to the graph and TODO generators."""

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._triggered: set[tuple[str, str]] = set()

    def forget(self, message_ids: Iterable[str]) -> None:
        """Stop tracking messages whose chat is no longer live."""
        ids = set(message_ids)
        self._triggered = {key for key in self._triggered if key[1] not in ids}

    async def trigger_graph(self, chat_id: str, message_id: str, question: str, answer: str) -> bool:
        """POST /graph/generate for one AI message."""
        return await self._trigger("graph", "/graph/generate", chat_id, message_id, {
            "chatId": chat_id, "messageId": message_id, "question": question, "answer": answer,
        })

    async def trigger_todo(self, chat_id: str, message_id: str, answer: str) -> bool:
        """POST /todo/generate for one AI message."""
        return await self._trigger("todo", "/todo/generate", chat_id, message_id, {
            "chatId": chat_id, "messageId": message_id, "aiResponse": answer,
        })

    async def _trigger(self, kind: str, path: str, chat_id: str, message_id: str, payload: dict) -> bool:
        key = (kind, message_id)
        if key in self._triggered:
            return False
        self._triggered.add(key)
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=TRIGGER_TIMEOUT, transport=self._transport) as client:
                resp = await client.post(path, json=payload)
                resp.raise_for_status()
        except Exception as e:
            logger.warning("Artifact trigger failed", extra={
                "chat_id": chat_id, "message_id": message_id,
                "action": f"trigger_{kind}_failed", "extra": str(e),
            })
            return False
        logger.info("Artifact trigger sent", extra={"chat_id": chat_id, "message_id": message_id, "action": f"trigger_{kind}"})
        return True
