"""Web search tool backed by the Brave Search API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from pydantic import Field

from luna.config import settings
from luna.tools.base import ToolParams, ToolResult

if TYPE_CHECKING:
    from luna.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
MAX_RESULTS = 10


class WebSearchParams(ToolParams):
    query: str = Field(description="Search query string")
    count: int = Field(
        default=5,
        description="Number of results to return (1-10)",
        ge=1,
        le=MAX_RESULTS,
    )


async def web_search(query: str, count: int = 5) -> ToolResult:
    api_key = settings.brave_search_api_key
    if not api_key:
        return ToolResult(error="BRAVE_SEARCH_API_KEY is not configured.")

    headers = {
        "Accept": "application/json",
        "Accept-Encoding": "gzip",
        "X-Subscription-Token": api_key,
    }
    params = {"q": query, "count": min(count, MAX_RESULTS)}

    try:
        async with httpx.AsyncClient(timeout=20) as client:
            resp = await client.get(BRAVE_SEARCH_URL, headers=headers, params=params)

        if resp.status_code != 200:
            return ToolResult(
                error=f"Brave Search API returned {resp.status_code}: {resp.text[:200]}"
            )

        web_results = resp.json().get("web", {}).get("results", [])
        results = [
            {
                "title": r.get("title", ""),
                "url": r.get("url", ""),
                "description": r.get("description", ""),
            }
            for r in web_results
        ]
        return ToolResult(data={"results": results, "count": len(results), "query": query})
    except httpx.HTTPError as exc:
        logger.exception("Brave Search request failed")
        return ToolResult(error=f"Search request failed: {exc}")


def register(registry: ToolRegistry) -> None:
    """Add ``web_search`` to *registry*."""
    registry.tool(
        name="web_search",
        description=(
            "Search the web for current information using Brave Search. Returns "
            "titles, URLs, and descriptions for matching pages. Use only when the "
            "question needs up-to-date facts such as news, weather or opening hours."
        ),
        category="research",
        params_model=WebSearchParams,
    )(web_search)
