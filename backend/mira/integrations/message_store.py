"""
SQLite-backed store for chats and chat turns.

AI enrichment (reasoning narrative, jargon mapping, source links, tags, graph
data, human-in-the-loop annotations) is stored alongside the message text and
expanded back into ``Message`` fields by ``get_history``.
"""

import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from mira.conversation.persistence import jargons_from_mapping, rebuild_reasoning_trace
from mira.models.schemas import Chat, Message, MessageEnrichment, Sender, new_id
from mira.utils.logger import get_logger

logger = get_logger("message_store")

DEFAULT_DB_PATH = "./data/mira.db"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageStore:
    """Persists chats, their tags and their messages."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self._db_path = db_path
        os.makedirs(os.path.dirname(db_path) if os.path.dirname(db_path) else ".", exist_ok=True)
        self._ensure_tables()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_tables(self):
        conn = self._conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                sender TEXT NOT NULL,
                text TEXT NOT NULL,
                created_at TEXT NOT NULL,
                enrichment TEXT,
                FOREIGN KEY (chat_id) REFERENCES chats(id) ON DELETE CASCADE
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_messages_chat ON chat_messages(chat_id, seq)")
        conn.commit()
        conn.close()

    # ── Chats ─────────────────────────────────────────────────────────

    def create_chat(self, user_id: str, title: str, tags: Optional[list[str]] = None) -> str:
        chat_id = new_id()
        ts = _now_iso()
        conn = self._conn()
        conn.execute(
            "INSERT INTO chats (id, user_id, title, tags, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (chat_id, user_id, title, json.dumps(tags or []), ts, ts),
        )
        conn.commit()
        conn.close()
        logger.info("Chat created", extra={"chat_id": chat_id, "user_id": user_id, "action": "create_chat"})
        return chat_id

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        conn = self._conn()
        row = conn.execute("SELECT * FROM chats WHERE id = ?", (chat_id,)).fetchone()
        conn.close()
        return self._row_to_chat(row) if row else None

    def validate_chat(self, chat_id: str) -> bool:
        """True when ``chat_id`` refers to an existing chat."""
        if not chat_id:
            return False
        conn = self._conn()
        row = conn.execute("SELECT 1 FROM chats WHERE id = ?", (chat_id,)).fetchone()
        conn.close()
        return row is not None

    def list_chats(self, user_id: str) -> list[Chat]:
        conn = self._conn()
        rows = conn.execute(
            "SELECT * FROM chats WHERE user_id = ? ORDER BY updated_at DESC", (user_id,)
        ).fetchall()
        conn.close()
        return [self._row_to_chat(r) for r in rows]

    def add_chat_tag(self, chat_id: str, tag: str) -> list[str]:
        """Add ``tag`` to the chat's tag list if absent; returns the resulting list."""
        conn = self._conn()
        row = conn.execute("SELECT tags FROM chats WHERE id = ?", (chat_id,)).fetchone()
        if row is None:
            conn.close()
            raise KeyError(f"Unknown chat {chat_id}")
        tags = json.loads(row["tags"])
        if tag and tag not in tags:
            tags.append(tag)
            conn.execute("UPDATE chats SET tags = ? WHERE id = ?", (json.dumps(tags), chat_id))
            conn.commit()
        conn.close()
        return tags

    def delete_chat(self, chat_id: str) -> bool:
        conn = self._conn()
        conn.execute("DELETE FROM chat_messages WHERE chat_id = ?", (chat_id,))
        cursor = conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
        conn.commit()
        conn.close()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Chat deleted", extra={"chat_id": chat_id, "action": "delete_chat"})
        return deleted

    # ── Messages ──────────────────────────────────────────────────────

    def save_message(
        self,
        chat_id: str,
        sender: Sender,
        text: str,
        enrichment: Optional[MessageEnrichment] = None,
        message_id: Optional[str] = None,
    ) -> str:
        """Insert (or overwrite) one turn and bump the chat's ``updated_at``."""
        message_id = message_id or new_id()
        ts = _now_iso()
        payload = enrichment.model_dump_json(exclude_none=True) if enrichment else None
        conn = self._conn()
        try:
            if conn.execute("SELECT 1 FROM chats WHERE id = ?", (chat_id,)).fetchone() is None:
                raise KeyError(f"Unknown chat {chat_id}")
            existing = conn.execute(
                "SELECT seq, created_at FROM chat_messages WHERE id = ?", (message_id,)
            ).fetchone()
            if existing:
                conn.execute(
                    "UPDATE chat_messages SET sender = ?, text = ?, enrichment = ? WHERE id = ?",
                    (Sender(sender).value, text, payload, message_id),
                )
            else:
                seq = conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) + 1 FROM chat_messages WHERE chat_id = ?", (chat_id,)
                ).fetchone()[0]
                conn.execute(
                    "INSERT INTO chat_messages (id, chat_id, seq, sender, text, created_at, enrichment) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (message_id, chat_id, seq, Sender(sender).value, text, ts, payload),
                )
            conn.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (ts, chat_id))
            conn.commit()
        finally:
            conn.close()
        return message_id

    def get_history(self, chat_id: str) -> list[Message]:
        conn = self._conn()
        rows = conn.execute(
            "SELECT * FROM chat_messages WHERE chat_id = ? ORDER BY seq", (chat_id,)
        ).fetchall()
        conn.close()
        return [self._row_to_message(r) for r in rows]

    def search_messages(self, user_id: str, query: str, limit: int = 50) -> list[tuple[Chat, Message]]:
        """Case-insensitive substring search over every turn in the user's chats, newest first."""
        query = query.strip()
        if not query:
            return []
        conn = self._conn()
        rows = conn.execute(
            "SELECT m.*, c.user_id AS c_user_id, c.title AS c_title, c.tags AS c_tags, "
            "c.created_at AS c_created_at, c.updated_at AS c_updated_at "
            "FROM chat_messages m JOIN chats c ON c.id = m.chat_id "
            "WHERE c.user_id = ? AND instr(lower(m.text), lower(?)) > 0 "
            "ORDER BY m.created_at DESC, m.seq DESC LIMIT ?",
            (user_id, query, limit),
        ).fetchall()
        conn.close()
        return [
            (
                Chat(
                    id=r["chat_id"],
                    user_id=r["c_user_id"],
                    title=r["c_title"],
                    tags=json.loads(r["c_tags"]),
                    created_at=r["c_created_at"],
                    updated_at=r["c_updated_at"],
                ),
                self._row_to_message(r),
            )
            for r in rows
        ]

    # ── Row mapping ───────────────────────────────────────────────────

    @staticmethod
    def _row_to_chat(row: sqlite3.Row) -> Chat:
        return Chat(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            tags=json.loads(row["tags"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        fields = {
            "id": row["id"],
            "chat_id": row["chat_id"],
            "sender": row["sender"],
            "text": row["text"],
            "created_at": row["created_at"],
        }
        if row["enrichment"]:
            enrichment = MessageEnrichment.model_validate_json(row["enrichment"])
            fields.update(
                reasoning_trace=rebuild_reasoning_trace(enrichment.reasoning),
                jargons=jargons_from_mapping(enrichment.jargons),
                source_links=enrichment.source_links or None,
                tags=enrichment.tags,
                duration_sec=enrichment.duration_sec,
                action_type=enrichment.action_type,
                confirm_type=enrichment.confirm_type,
                human_in_the_loop_message=enrichment.human_in_the_loop_message,
            )
        return Message(**fields)
