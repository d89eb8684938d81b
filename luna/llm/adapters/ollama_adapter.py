"""Local model adapter over the Ollama async client."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import ollama

from luna.llm.adapters.base import InferenceAdapter
from luna.llm.types import AdapterKind, GenerationResult, StreamChunk

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from luna.llm.types import GenerationSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0


def ollama_options(settings: GenerationSettings) -> dict[str, Any]:
    """Map generic settings onto Ollama's ``options`` object."""
    options: dict[str, Any] = {}
    if settings.temperature is not None:
        options["temperature"] = settings.temperature
    if settings.max_tokens is not None:
        options["num_predict"] = settings.max_tokens
    if settings.top_p is not None:
        options["top_p"] = settings.top_p
    if settings.repeat_penalty is not None:
        options["repeat_penalty"] = settings.repeat_penalty
    return options


def _content(part: Any) -> str:
    message = part["message"]
    return (message["content"] if message else "") or ""


class OllamaAdapter(InferenceAdapter):
    """Local adapter. Tools are never sent to local models."""

    kind = AdapterKind.LOCAL
    supports_streaming = True

    def __init__(
        self,
        adapter_id: str,
        model: str,
        display_name: str = "",
        base_url: str = "http://localhost:11434",
        context_window_tokens: int = 4096,
        timeout: float = DEFAULT_TIMEOUT,
        client: ollama.AsyncClient | None = None,
    ) -> None:
        self.id = adapter_id
        self.model = model
        self.display_name = display_name or model
        self.context_window_tokens = context_window_tokens
        self._host = base_url
        self._timeout = timeout
        self._client = client

    def _get_client(self) -> ollama.AsyncClient:
        """Lazily initialize the Ollama client."""
        if self._client is None:
            self._client = ollama.AsyncClient(host=self._host, timeout=self._timeout)
        return self._client

    async def generate(
        self,
        messages: list[dict[str, str]],
        settings: GenerationSettings,
        tools: list[dict[str, Any]] | None = None,
    ) -> GenerationResult:
        if tools:
            logger.debug("Ignoring %d tool(s) for local model %s", len(tools), self.id)

        response = await self._get_client().chat(
            model=self.model,
            messages=messages,
            options=ollama_options(settings) or None,
            stream=False,
        )
        # Ollama's counts are not reliable enough to report
        return GenerationResult(reply=_content(response).strip(), token_usage=None)

    async def generate_stream(
        self,
        messages: list[dict[str, str]],
        settings: GenerationSettings,
    ) -> AsyncGenerator[StreamChunk, None]:
        stream = await self._get_client().chat(
            model=self.model,
            messages=messages,
            options=ollama_options(settings) or None,
            stream=True,
        )
        try:
            async for part in stream:
                content = _content(part)
                if content:
                    yield StreamChunk(delta=content)
                if part["done"]:
                    break
        finally:
            await stream.aclose()

        yield StreamChunk(delta="", done=True)
