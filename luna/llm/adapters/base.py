"""Inference adapter contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from luna.llm.types import AdapterKind, GenerationResult, GenerationSettings, StreamChunk


class InferenceAdapter(ABC):
    """A model backend the orchestrator can call.

    Subclasses set the descriptor attributes and implement ``generate``.
    Adapters that can stream set ``supports_streaming = True`` and override
    ``generate_stream``; closing the returned iterator must release the
    underlying connection.

    ``messages`` are plain ``{"role", "content"}`` dicts. ``tools`` are
    neutral definitions with ``name``, ``description`` and ``parameters``
    (a JSON schema); each adapter converts them to its provider's format.
    """

    id: str = ""
    display_name: str = ""
    kind: AdapterKind
    context_window_tokens: int = 0
    supports_streaming: bool = False

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, str]],
        settings: GenerationSettings,
        tools: list[dict[str, Any]] | None = None,
    ) -> GenerationResult:
        """Return the complete reply, plus any requested tool calls."""
        ...

    def generate_stream(
        self,
        messages: list[dict[str, str]],
        settings: GenerationSettings,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Yield the reply incrementally."""
        raise NotImplementedError(f"{type(self).__name__} does not stream")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r} kind={self.kind}>"
