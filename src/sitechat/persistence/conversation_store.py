from __future__ import annotations

import json
from datetime import UTC, datetime

from loguru import logger

from sitechat.models import Message
from sitechat.persistence.store import MemoryStore
from sitechat.token_budget import estimate_text_tokens


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class ConversationStore:
    """Reads chat history and appends finalized messages."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def ensure_chat(self, chat_id: str) -> None:
        now = utc_now()
        self._store.execute(
            "INSERT OR IGNORE INTO chats (id, created_at, updated_at) VALUES (?, ?, ?)",
            (chat_id, now, now),
        )
        self._store.commit()

    def load_messages(self, chat_id: str) -> list[Message]:
        rows = self._store.execute(
            """
            SELECT id, role, content, annotations_json, attachments_json, created_at
            FROM messages
            WHERE chat_id = ?
            ORDER BY seq ASC
            """,
            (chat_id,),
        ).fetchall()
        return [
            Message(
                id=row["id"],
                role=row["role"],
                content=row["content"],
                annotations=set(json.loads(row["annotations_json"])),
                created_at=datetime.fromisoformat(row["created_at"]),
                attachments=json.loads(row["attachments_json"]),
            )
            for row in rows
        ]

    def append_messages(self, chat_id: str, messages: list[Message]) -> list[str]:
        """Persist messages in order. Ids already stored and ``no-store`` messages are skipped."""
        self.ensure_chat(chat_id)
        row = self._store.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE chat_id = ?",
            (chat_id,),
        ).fetchone()
        next_seq = int(row["max_seq"]) + 1
        written: list[str] = []

        with self._store.transaction():
            for message in messages:
                if "no-store" in message.annotations:
                    continue
                exists = self._store.execute(
                    "SELECT 1 FROM messages WHERE id = ? LIMIT 1",
                    (message.id,),
                ).fetchone()
                if exists is not None:
                    logger.debug(f"Message {message.id} already persisted; skipping")
                    continue
                self._store.execute(
                    """
                    INSERT INTO messages (
                        id, chat_id, seq, role, content, annotations_json,
                        attachments_json, created_at, token_estimate
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        chat_id,
                        next_seq,
                        message.role,
                        message.content,
                        json.dumps(sorted(message.annotations)),
                        json.dumps(message.attachments, ensure_ascii=True),
                        message.created_at.isoformat(timespec="seconds"),
                        estimate_text_tokens(message.content),
                    ),
                )
                written.append(message.id)
                next_seq += 1
            self._store.execute(
                "UPDATE chats SET updated_at = ? WHERE id = ?",
                (utc_now(), chat_id),
            )
        return written
