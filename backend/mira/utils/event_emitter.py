from collections import deque
from datetime import datetime, timezone
from mira.models.schemas import ChatEvent
from mira.utils.logger import get_logger

logger = get_logger(__name__)

# Oldest events are evicted first; clients resync through GET /state
MAX_BUFFERED_EVENTS = 500


class EventEmitter:
    """Emits chat events via WebSocket and keeps the most recent ones locally."""

    def __init__(self, chat_id: str, websocket_manager=None, max_events: int = MAX_BUFFERED_EVENTS):
        self.chat_id = chat_id
        self._websocket_manager = websocket_manager
        self._events: deque[ChatEvent] = deque(maxlen=max_events)

    async def emit(self, event_type: str, data: dict | None = None) -> ChatEvent:
        """Emit a chat event: sends via WebSocket and stores locally."""
        event = ChatEvent(
            timestamp=datetime.now(timezone.utc),
            chat_id=self.chat_id,
            event_type=event_type,
            data=data or {},
        )
        self._events.append(event)

        logger.debug("Event emitted", extra={"chat_id": self.chat_id, "action": event_type})

        if self._websocket_manager:
            try:
                await self._websocket_manager.send_message(
                    self.chat_id,
                    {
                        "type": event_type,
                        "data": event.model_dump(mode="json"),
                    },
                )
            except Exception as e:
                # Event stays in the local buffer; clients catch up through GET /state
                logger.warning("WebSocket broadcast failed (event stored locally)", extra={"chat_id": self.chat_id, "action": "ws_broadcast_failed", "extra": str(e)})

        return event

    def rebind(self, chat_id: str) -> None:
        """Point the emitter at a chat id assigned after construction."""
        self.chat_id = chat_id

    def get_all_events(self) -> list[ChatEvent]:
        """Return the buffered events, oldest first."""
        return list(self._events)

    def get_events_by_type(self, event_type: str) -> list[ChatEvent]:
        """Return events filtered by type."""
        return [e for e in self._events if e.event_type == event_type]
