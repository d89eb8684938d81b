"""Adapter registry — maps model IDs and aliases to adapters."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from luna.llm.adapters.anthropic_adapter import AnthropicAdapter
from luna.llm.adapters.ollama_adapter import OllamaAdapter

if TYPE_CHECKING:
    from luna.config import Settings
    from luna.llm.adapters.base import InferenceAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Lookup table from canonical ID or alias to one shared adapter.

    Aliases point at the same instance as the canonical ID; nothing is copied.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, InferenceAdapter] = {}

    def register(self, adapter: InferenceAdapter, aliases: list[str] | None = None) -> None:
        """Register *adapter* under its ``id`` and every non-empty alias."""
        self._adapters[adapter.id] = adapter
        for alias in aliases or []:
            alias = alias.strip()
            if alias:
                self._adapters[alias] = adapter
        logger.debug("Registered adapter %s (aliases: %s)", adapter.id, aliases or [])

    def resolve(self, id_or_alias: str) -> InferenceAdapter | None:
        """Return the adapter for a canonical ID or alias, or None."""
        if not id_or_alias:
            return None
        return self._adapters.get(id_or_alias.strip())

    def list_unique(self) -> list[InferenceAdapter]:
        """Each adapter once, sorted by kind, then display name, then ID."""
        unique: dict[str, InferenceAdapter] = {}
        for adapter in self._adapters.values():
            unique.setdefault(adapter.id, adapter)
        return sorted(
            unique.values(),
            key=lambda a: (str(a.kind), a.display_name, a.id),
        )

    def __contains__(self, id_or_alias: str) -> bool:
        return self.resolve(id_or_alias) is not None


def build_default_registry(settings: Settings) -> AdapterRegistry:
    """Registry with Claude plus every configured Ollama model."""
    registry = AdapterRegistry()

    claude = AnthropicAdapter(
        adapter_id="claude-sonnet-4.5",
        model=settings.claude_model,
        display_name="Claude Sonnet 4.5",
        api_key=settings.anthropic_api_key,
    )
    registry.register(claude, ["claude", "claude-sonnet", settings.claude_model])

    for adapter_id, tag in settings.get_ollama_models().items():
        adapter = OllamaAdapter(
            adapter_id=adapter_id,
            model=tag,
            base_url=settings.ollama_base_url,
        )
        registry.register(adapter, [tag] if tag != adapter_id else [])

    logger.info(
        "Adapters: %s", ", ".join(a.id for a in registry.list_unique())
    )
    return registry
