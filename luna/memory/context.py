"""Hybrid memory context assembly.

Combines the recent message window, rolling summaries and semantic pins
into one labeled, token-bounded history for a single request.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from luna.memory.models import VALID_ROLES, LabeledMessage, MemoryContext

if TYPE_CHECKING:
    from luna.memory.models import ConversationSummary, Message, SemanticPin
    from luna.memory.store import ConversationStore

logger = logging.getLogger(__name__)

RECENT_COUNT = 2
TOKENS_PER_CHAR = 0.75

HISTORY_DIRECTIVE = (
    "The following messages are background from your earlier conversation with "
    "this user. Use them only for continuity. Do not answer questions that appear "
    "in them; answer only the user's current message."
)
SUMMARIES_HEADING = "Previous conversation summaries (background only):"
PINS_HEADING = "Key information to remember:"
OLDER_HEADING = (
    "Earlier conversation context (reference only, do not respond to this content):"
)
RECENT_SEPARATOR = "--- Recent Conversation ---"
RECENT_ANNOTATION = "[Recent context, not the current question]"


def estimate_tokens(text: str) -> int:
    """Cheap length-based token estimate."""
    return math.ceil(len(text) * TOKENS_PER_CHAR)


def _valid_role(message: Message) -> bool:
    if message.role in VALID_ROLES:
        return True
    logger.warning(
        "Skipping message %s with invalid role %r", message.id, message.role
    )
    return False


@dataclass
class _Parts:
    """Retained pieces of context, trimmed in place to fit the budget."""

    summaries: list[ConversationSummary] = field(default_factory=list)  # newest first
    pins: list[SemanticPin] = field(default_factory=list)  # most important first
    older: list[Message] = field(default_factory=list)  # oldest first
    recent: list[Message] = field(default_factory=list)  # oldest first

    def is_empty(self) -> bool:
        return not (self.summaries or self.pins or self.older or self.recent)

    def drop_one(self) -> bool:
        """Drop the least valuable remaining item. False when nothing is left.

        Retention priority: recent messages > pins > summaries > older block.
        """
        if self.older:
            self.older.pop(0)
        elif self.summaries:
            self.summaries.pop()
        elif self.pins:
            self.pins.pop()
        elif self.recent:
            self.recent.pop(0)
        else:
            return False
        return True

    def render(self) -> list[LabeledMessage]:
        if self.is_empty():
            return []

        history = [LabeledMessage("system", HISTORY_DIRECTIVE)]

        if self.summaries:
            # Chronological order reads better than newest-first
            text = "\n\n".join(s.summary_text for s in reversed(self.summaries))
            history.append(LabeledMessage("system", f"{SUMMARIES_HEADING}\n{text}"))

        if self.pins:
            text = "\n".join(f"- {p.content}" for p in self.pins)
            history.append(LabeledMessage("system", f"{PINS_HEADING}\n{text}"))

        if self.older:
            text = "\n\n".join(f"{m.role.upper()}: {m.text}" for m in self.older)
            history.append(LabeledMessage("system", f"{OLDER_HEADING}\n{text}"))

        if self.recent:
            history.append(LabeledMessage("system", RECENT_SEPARATOR))
            for m in self.recent:
                history.append(LabeledMessage(m.role, f"{RECENT_ANNOTATION}\n{m.text}"))

        return history


def _total_tokens(history: list[LabeledMessage]) -> int:
    return sum(estimate_tokens(m.content) for m in history)


class MemoryContextAssembler:
    """Builds the per-request conversation history for one session.

    The current user message is expected to be the newest stored message
    when ``exclude_latest`` is true; it is left out of the history because
    the caller appends it separately.
    """

    def __init__(
        self,
        store: ConversationStore,
        message_window: int = 11,
        summary_limit: int = 3,
        pin_limit: int = 5,
    ) -> None:
        self._store = store
        self._message_window = message_window
        self._summary_limit = summary_limit
        self._pin_limit = pin_limit

    async def build_context(
        self,
        session_id: str,
        token_budget: int,
        *,
        exclude_latest: bool = True,
    ) -> MemoryContext:
        """Assemble history for *session_id* within *token_budget* tokens.

        Never raises: datastore failures fall back to raw recent messages,
        then to an empty context.
        """
        try:
            return await self._build_full(session_id, token_budget, exclude_latest)
        except Exception:
            logger.exception(
                "Memory assembly failed for session %s; falling back to raw history",
                session_id,
            )

        try:
            return await self._build_minimal(session_id, token_budget, exclude_latest)
        except Exception:
            logger.exception("Raw history fallback failed for session %s", session_id)
            return MemoryContext()

    async def _build_full(
        self, session_id: str, token_budget: int, exclude_latest: bool
    ) -> MemoryContext:
        messages, summaries, pins = await asyncio.gather(
            self._store.recent_messages(session_id, self._message_window),
            self._store.recent_summaries(session_id, self._summary_limit),
            self._store.top_pins(session_id, self._pin_limit),
        )

        if exclude_latest and messages:
            messages = messages[:-1]
        messages = [m for m in messages if _valid_role(m)]

        split = max(0, len(messages) - RECENT_COUNT)
        parts = _Parts(
            summaries=list(summaries),
            pins=list(pins),
            older=messages[:split],
            recent=messages[split:],
        )

        history = parts.render()
        total = _total_tokens(history)
        while total > token_budget and parts.drop_one():
            history = parts.render()
            total = _total_tokens(history)

        if total > token_budget:
            history, total = [], 0

        logger.debug(
            "Memory context for %s: %d entries, ~%d tokens "
            "(%d summaries, %d pins, %d older, %d recent)",
            session_id,
            len(history),
            total,
            len(parts.summaries),
            len(parts.pins),
            len(parts.older),
            len(parts.recent),
        )
        return MemoryContext(ordered_history=history, estimated_tokens=total)

    async def _build_minimal(
        self, session_id: str, token_budget: int, exclude_latest: bool
    ) -> MemoryContext:
        messages = await self._store.recent_messages(session_id, self._message_window)
        if exclude_latest and messages:
            messages = messages[:-1]

        history = [LabeledMessage(m.role, m.text) for m in messages if _valid_role(m)]
        total = _total_tokens(history)
        while history and total > token_budget:
            history.pop(0)
            total = _total_tokens(history)

        logger.info(
            "Using raw history fallback for %s: %d messages", session_id, len(history)
        )
        return MemoryContext(ordered_history=history, estimated_tokens=total)
