"""
SQLite-backed report folders and the artifacts saved into them.
"""

import os
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from mira.models.schemas import Artifact, Folder, new_id
from mira.utils.logger import get_logger

logger = get_logger("folder_store")

DEFAULT_DB_PATH = "./data/mira.db"


class FolderExistsError(ValueError):
    """A folder with the same (case-insensitive) name already exists for the user."""


class FolderStore:
    """Per-user report folders and saved markdown artifacts."""

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
            CREATE TABLE IF NOT EXISTS report_folders (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS report_files (
                id TEXT PRIMARY KEY,
                folder_id TEXT NOT NULL,
                name TEXT NOT NULL,
                markdown TEXT NOT NULL,
                report_type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (folder_id) REFERENCES report_folders(id) ON DELETE CASCADE
            )
        """)
        conn.commit()
        conn.close()

    def list_folders(self, user_id: str) -> list[Folder]:
        conn = self._conn()
        rows = conn.execute(
            "SELECT * FROM report_folders WHERE user_id = ? ORDER BY created_at", (user_id,)
        ).fetchall()
        conn.close()
        return [Folder(**dict(r)) for r in rows]

    def create_folder(self, user_id: str, name: str) -> Folder:
        """Create a folder; names are unique per user ignoring case."""
        name = name.strip()
        if not name:
            raise ValueError("Folder name must not be empty")
        conn = self._conn()
        try:
            clash = conn.execute(
                "SELECT 1 FROM report_folders WHERE user_id = ? AND lower(name) = lower(?)",
                (user_id, name),
            ).fetchone()
            if clash:
                raise FolderExistsError(name)
            folder = Folder(user_id=user_id, name=name)
            conn.execute(
                "INSERT INTO report_folders (id, user_id, name, created_at) VALUES (?, ?, ?, ?)",
                (folder.id, folder.user_id, folder.name, folder.created_at.isoformat()),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Folder created", extra={"user_id": user_id, "action": "create_folder", "extra": {"folder_id": folder.id, "name": name}})
        return folder

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        conn = self._conn()
        row = conn.execute("SELECT * FROM report_folders WHERE id = ?", (folder_id,)).fetchone()
        conn.close()
        return Folder(**dict(row)) if row else None

    def save_artifact(self, folder_id: str, name: str, markdown: str, report_type: str) -> str:
        """Store a markdown report in ``folder_id``; returns the artifact id."""
        artifact_id = new_id()
        ts = datetime.now(timezone.utc).isoformat()
        conn = self._conn()
        try:
            if conn.execute("SELECT 1 FROM report_folders WHERE id = ?", (folder_id,)).fetchone() is None:
                raise KeyError(f"Unknown folder {folder_id}")
            conn.execute(
                "INSERT INTO report_files (id, folder_id, name, markdown, report_type, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (artifact_id, folder_id, name, markdown, report_type, ts),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Artifact saved", extra={"action": "save_artifact", "extra": {"artifact_id": artifact_id, "folder_id": folder_id, "report_type": report_type}})
        return artifact_id

    def get_artifact(self, artifact_id: str) -> Optional[Artifact]:
        conn = self._conn()
        row = conn.execute("SELECT * FROM report_files WHERE id = ?", (artifact_id,)).fetchone()
        conn.close()
        return Artifact(**dict(row)) if row else None

    def list_artifacts(self, folder_id: str) -> list[Artifact]:
        conn = self._conn()
        rows = conn.execute(
            "SELECT * FROM report_files WHERE folder_id = ? ORDER BY created_at", (folder_id,)
        ).fetchall()
        conn.close()
        return [Artifact(**dict(r)) for r in rows]
