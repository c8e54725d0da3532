from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, List, Optional

from coreflow.events import phase_update_adapter
from coreflow.models import ChatMessage

DB_FILENAME = "coreflow.db"


class OrchestrationStore:
    """Conversation history reader and append-only audit log."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        base_dir = Path(__file__).resolve().parent
        self.db_path = db_path or str(base_dir / DB_FILENAME)
        self._init_schema()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    turn_id TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_turn ON audit_events(turn_id, id)")

    def append_message(self, conversation_id: str, role: str, content: str) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                "INSERT INTO messages(conversation_id, role, content) VALUES (?, ?, ?)",
                (conversation_id, role, content),
            )
            return int(cur.lastrowid)

    def recent_messages(self, conversation_id: str, limit: int = 6) -> List[ChatMessage]:
        if limit <= 0:
            return []
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT role, content, created_at
                FROM messages
                WHERE conversation_id=?
                ORDER BY id DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [
            ChatMessage(role=r["role"], content=r["content"], created_at=r["created_at"])
            for r in reversed(rows)
        ]

    def append_event(self, turn_id: str, update: Any) -> int:
        payload = phase_update_adapter.dump_json(update).decode("utf-8")
        with self._conn() as conn:
            cur = conn.execute(
                "INSERT INTO audit_events(turn_id, phase, payload_json) VALUES (?, ?, ?)",
                (turn_id, update.phase, payload),
            )
            return int(cur.lastrowid)

    def list_events(self, turn_id: str, phase: Optional[str] = None) -> List[Any]:
        sql = "SELECT payload_json FROM audit_events WHERE turn_id=?"
        params: list = [turn_id]
        if phase:
            sql += " AND phase=?"
            params.append(phase)
        sql += " ORDER BY id ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [phase_update_adapter.validate_json(r["payload_json"]) for r in rows]
