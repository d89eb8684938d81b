"""Tool framework — build the registry of tools offered to cloud models."""

from __future__ import annotations

from typing import TYPE_CHECKING

from luna.tools.base import ToolParams, ToolResult
from luna.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from luna.config import Settings


def build_tool_registry(settings: Settings) -> ToolRegistry:
    """Registry holding every tool whose integration is configured."""
    registry = ToolRegistry()

    # Web search is only offered when a Brave Search API key is configured.
    if settings.brave_search_api_key:
        from luna.tools import web_tools

        web_tools.register(registry)

    return registry


__all__ = ["ToolParams", "ToolRegistry", "ToolResult", "build_tool_registry"]
