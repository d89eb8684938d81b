"""ConversationStore — messages, summaries, pins and personas via libsql."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from luna.db import get_connection
from luna.llm.types import Persona
from luna.memory.models import ConversationSummary, Message, SemanticPin

if TYPE_CHECKING:
    from pathlib import Path

    from luna.llm.types import GenerationSettings

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS messages (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id       TEXT NOT NULL,
        role             TEXT,
        text             TEXT,
        model_id         TEXT,
        token_usage      INTEGER,
        importance_score REAL DEFAULT 0.5,
        created_at       TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_session_created
        ON messages (session_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_summaries (
        id               TEXT PRIMARY KEY,
        session_id       TEXT NOT NULL,
        summary          TEXT NOT NULL,
        message_count    INTEGER NOT NULL DEFAULT 0,
        start_message_id TEXT,
        end_message_id   TEXT,
        importance_score REAL DEFAULT 0.7,
        created_at       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS semantic_pins (
        id                TEXT PRIMARY KEY,
        session_id        TEXT NOT NULL,
        content           TEXT NOT NULL,
        source_message_id TEXT,
        importance_score  REAL DEFAULT 0.8,
        pin_type          TEXT DEFAULT 'manual',
        created_at        TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS personas (
        id             TEXT PRIMARY KEY,
        name           TEXT NOT NULL,
        prompt         TEXT NOT NULL,
        temperature    REAL,
        max_tokens     INTEGER,
        top_p          REAL,
        repeat_penalty REAL
    )
    """,
]


class ConversationStore:
    """Read-mostly access to conversation memory.

    Messages are append-only. Summaries and pins are written by processes
    outside the conversation engine; the write methods here exist for them.
    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self):  # noqa: ANN202
        db = await get_connection(local_path_override=self._db_path)
        if not self._initialised:
            await db.executescript(_SCHEMA)
            self._initialised = True
        return db

    # -- Messages ----------------------------------------------------------------

    async def append_message(self, message: Message) -> Message:
        """Insert a message and return it with its assigned ID."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                INSERT INTO messages
                    (session_id, role, text, model_id, token_usage, importance_score, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.session_id,
                    message.role,
                    message.text,
                    message.model_id,
                    message.token_usage,
                    message.importance,
                    message.created_at,
                ),
            )
            await db.commit()
            message.id = cursor.lastrowid
            return message
        finally:
            await db.close()

    async def recent_messages(self, session_id: str, limit: int) -> list[Message]:
        """Return the newest *limit* messages, oldest first."""
        db = await self._connect()
        try:
            rows = await db.fetch_dicts(
                """
                SELECT * FROM (
                    SELECT id, session_id, role, text, model_id, token_usage,
                           importance_score, created_at
                    FROM messages
                    WHERE session_id = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                ) ORDER BY created_at ASC, id ASC
                """,
                (session_id, limit),
            )
            return [Message.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Summaries ---------------------------------------------------------------

    async def add_summary(self, summary: ConversationSummary) -> ConversationSummary:
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO conversation_summaries
                    (id, session_id, summary, message_count,
                     start_message_id, end_message_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    summary.id,
                    summary.session_id,
                    summary.summary_text,
                    summary.message_count,
                    summary.start_message_id,
                    summary.end_message_id,
                    summary.created_at,
                ),
            )
            await db.commit()
            return summary
        finally:
            await db.close()

    async def recent_summaries(self, session_id: str, limit: int) -> list[ConversationSummary]:
        """Return up to *limit* summaries, newest first."""
        db = await self._connect()
        try:
            rows = await db.fetch_dicts(
                """
                SELECT * FROM conversation_summaries
                WHERE session_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (session_id, limit),
            )
            return [ConversationSummary.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Pins --------------------------------------------------------------------

    async def add_pin(
        self,
        session_id: str,
        content: str,
        importance: float = 0.8,
        category: str | None = "manual",
    ) -> SemanticPin:
        pin = SemanticPin(
            id=f"pin_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            content=content,
            importance=importance,
            category=category,
        )
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO semantic_pins
                    (id, session_id, content, importance_score, pin_type, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (pin.id, pin.session_id, pin.content, pin.importance, pin.category, pin.created_at),
            )
            await db.commit()
            return pin
        finally:
            await db.close()

    async def top_pins(self, session_id: str, limit: int) -> list[SemanticPin]:
        """Return up to *limit* pins, highest importance first."""
        db = await self._connect()
        try:
            rows = await db.fetch_dicts(
                """
                SELECT * FROM semantic_pins
                WHERE session_id = ?
                ORDER BY importance_score DESC, created_at DESC
                LIMIT ?
                """,
                (session_id, limit),
            )
            return [SemanticPin.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Personas ----------------------------------------------------------------

    async def save_persona(
        self,
        persona_id: str,
        name: str,
        prompt: str,
        defaults: GenerationSettings | None = None,
    ) -> None:
        """Insert or replace a persona."""
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT OR REPLACE INTO personas
                    (id, name, prompt, temperature, max_tokens, top_p, repeat_penalty)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    persona_id,
                    name,
                    prompt,
                    defaults.temperature if defaults else None,
                    defaults.max_tokens if defaults else None,
                    defaults.top_p if defaults else None,
                    defaults.repeat_penalty if defaults else None,
                ),
            )
            await db.commit()
        finally:
            await db.close()

    async def get_persona(self, persona_id: str) -> Persona | None:
        """Fetch one persona, or None if it does not exist."""
        db = await self._connect()
        try:
            rows = await db.fetch_dicts(
                "SELECT * FROM personas WHERE id = ?", (persona_id,)
            )
            return Persona.from_row(rows[0]) if rows else None
        finally:
            await db.close()
