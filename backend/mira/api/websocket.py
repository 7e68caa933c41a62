"""
WebSocket connection management
"""

from fastapi import WebSocket
from typing import Dict, List

from mira.utils.logger import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections, several per chat."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, chat_id: str, websocket: WebSocket):
        """Accept and store WebSocket connection"""
        await websocket.accept()
        self.active_connections.setdefault(chat_id, []).append(websocket)
        logger.info("WebSocket connected", extra={"chat_id": chat_id, "action": "ws_connect", "extra": {"total": len(self.active_connections[chat_id])}})

    def disconnect(self, chat_id: str, websocket: WebSocket = None):
        """Remove one WebSocket connection, or all of them for the chat"""
        if chat_id not in self.active_connections:
            return
        if websocket:
            self.active_connections[chat_id] = [
                ws for ws in self.active_connections[chat_id] if ws is not websocket
            ]
            if not self.active_connections[chat_id]:
                del self.active_connections[chat_id]
        else:
            del self.active_connections[chat_id]
        logger.info("WebSocket disconnected", extra={"chat_id": chat_id, "action": "ws_disconnect"})

    async def send_message(self, chat_id: str, message: dict):
        """Send message to all connections for a chat, retrying each once."""
        if chat_id not in self.active_connections:
            return
        disconnected = []
        for ws in list(self.active_connections[chat_id]):
            try:
                await ws.send_json(message)
            except Exception:
                try:
                    await ws.send_json(message)
                except Exception as e:
                    logger.warning("WebSocket send failed after retry", extra={"chat_id": chat_id, "action": "ws_send_error", "extra": str(e)})
                    disconnected.append(ws)
        for ws in disconnected:
            self.disconnect(chat_id, ws)


# Global connection manager instance
manager = ConnectionManager()
