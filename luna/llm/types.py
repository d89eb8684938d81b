"""Value types shared by the adapters, the registry and the orchestrator."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class AdapterKind(StrEnum):
    LOCAL = "local"
    CLOUD = "cloud"


class GenerationSettings(BaseModel):
    """Sampling settings understood by every adapter.

    Unset fields (``None``) let the adapter pick its own default.
    """

    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    repeat_penalty: float | None = None

    def merged_with(self, override: GenerationSettings | None) -> GenerationSettings:
        """Return a copy where every field set on *override* wins."""
        if override is None:
            return self.model_copy()
        return self.model_copy(update=override.model_dump(exclude_none=True))


@dataclass
class Persona:
    """A persona's instructions plus its generation defaults."""

    id: str
    name: str
    system_prompt: str
    defaults: GenerationSettings = field(default_factory=GenerationSettings)

    @classmethod
    def from_row(cls, row: dict) -> Persona:
        return cls(
            id=row["id"],
            name=row["name"],
            system_prompt=row["prompt"] or "",
            defaults=GenerationSettings(
                temperature=row["temperature"],
                max_tokens=row["max_tokens"],
                top_p=row["top_p"],
                repeat_penalty=row["repeat_penalty"],
            ),
        )


@dataclass
class ToolCall:
    """A model-requested function call, consumed within the same turn."""

    id: str
    name: str
    arguments_json: str

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the JSON arguments. Raises ``ValueError`` on bad input."""
        if not self.arguments_json.strip():
            return {}
        args = json.loads(self.arguments_json)
        if not isinstance(args, dict):
            msg = f"Tool arguments must be a JSON object, got {type(args).__name__}"
            raise ValueError(msg)
        return args


@dataclass
class GenerationResult:
    """What ``InferenceAdapter.generate`` returns."""

    reply: str
    token_usage: int | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class StreamChunk:
    """One increment of a streamed reply."""

    delta: str
    done: bool = False
    token_usage: int | None = None


@dataclass
class AgentReply:
    """Final result of a one-shot turn."""

    reply: str
    token_usage: int | None = None
