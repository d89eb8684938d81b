"""Data models for conversation memory storage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

VALID_ROLES = frozenset({"system", "user", "assistant"})


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Message:
    """A single persisted conversation turn. Append-only."""

    session_id: str
    role: str
    text: str
    importance: float = 0.5
    model_id: str | None = None
    token_usage: int | None = None
    created_at: str = field(default_factory=_now)
    id: int | None = None

    @classmethod
    def from_row(cls, row: dict) -> Message:
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"] or "",
            text=row["text"] or "",
            importance=row["importance_score"] if row["importance_score"] is not None else 0.5,
            model_id=row["model_id"],
            token_usage=row["token_usage"],
            created_at=row["created_at"] or "",
        )


@dataclass
class ConversationSummary:
    """A rolling summary produced by the external summarizer.

    ``start_message_id``/``end_message_id`` delimit the covered range.
    """

    id: str
    session_id: str
    summary_text: str
    message_count: int = 0
    start_message_id: str | None = None
    end_message_id: str | None = None
    created_at: str = field(default_factory=_now)

    @classmethod
    def from_row(cls, row: dict) -> ConversationSummary:
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            summary_text=row["summary"],
            message_count=row["message_count"] or 0,
            start_message_id=row["start_message_id"],
            end_message_id=row["end_message_id"],
            created_at=row["created_at"] or "",
        )


@dataclass
class SemanticPin:
    """A durable fact kept regardless of message recency."""

    id: str
    session_id: str
    content: str
    importance: float = 0.8
    category: str | None = None
    created_at: str = field(default_factory=_now)

    @classmethod
    def from_row(cls, row: dict) -> SemanticPin:
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            content=row["content"],
            importance=row["importance_score"] if row["importance_score"] is not None else 0.8,
            category=row["pin_type"],
            created_at=row["created_at"] or "",
        )


@dataclass
class LabeledMessage:
    """One entry of the assembled history, ready for an adapter."""

    role: str
    content: str

    def to_api(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class MemoryContext:
    """Per-request history payload. Built every turn, never cached."""

    ordered_history: list[LabeledMessage] = field(default_factory=list)
    estimated_tokens: int = 0

    def to_api_messages(self) -> list[dict[str, str]]:
        return [m.to_api() for m in self.ordered_history]
