"""Claude adapter over the Anthropic async SDK."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import anthropic

from luna.llm.adapters.base import InferenceAdapter
from luna.llm.types import AdapterKind, GenerationResult, StreamChunk, ToolCall

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from luna.llm.types import GenerationSettings

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


def split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    """Separate system messages from the conversation.

    Claude takes instructions in a single ``system`` parameter, so every
    system-role message is joined into it in order. Consecutive turns with
    the same role are merged because the API requires alternation.
    """
    system_parts: list[str] = []
    conversation: list[dict[str, str]] = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content", "")
        if role == "system":
            if content:
                system_parts.append(content)
        elif role in ("user", "assistant"):
            if conversation and conversation[-1]["role"] == role:
                conversation[-1]["content"] += f"\n\n{content}"
            else:
                conversation.append({"role": role, "content": content})
    # The first turn must come from the user
    if conversation and conversation[0]["role"] == "assistant":
        conversation.insert(0, {"role": "user", "content": "(conversation continues)"})
    return "\n\n".join(system_parts), conversation


def _tool_schemas(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "name": t["name"],
            "description": t.get("description", ""),
            "input_schema": t.get("parameters") or {"type": "object", "properties": {}},
        }
        for t in tools
    ]


class AnthropicAdapter(InferenceAdapter):
    """Cloud adapter for Claude models."""

    kind = AdapterKind.CLOUD
    supports_streaming = True

    def __init__(
        self,
        adapter_id: str,
        model: str,
        display_name: str = "",
        api_key: str = "",
        context_window_tokens: int = 200_000,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self.id = adapter_id
        self.model = model
        self.display_name = display_name or model
        self.context_window_tokens = context_window_tokens
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> anthropic.AsyncAnthropic:
        """Lazily initialize the Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    def _request_kwargs(
        self, messages: list[dict[str, str]], settings: GenerationSettings
    ) -> dict[str, Any]:
        system, conversation = split_system(messages)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": settings.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": conversation,
        }
        if system:
            kwargs["system"] = system
        if settings.temperature is not None:
            # Claude caps temperature at 1.0
            kwargs["temperature"] = min(settings.temperature, 1.0)
        if settings.top_p is not None:
            kwargs["top_p"] = settings.top_p
        return kwargs

    async def generate(
        self,
        messages: list[dict[str, str]],
        settings: GenerationSettings,
        tools: list[dict[str, Any]] | None = None,
    ) -> GenerationResult:
        kwargs = self._request_kwargs(messages, settings)
        if tools:
            kwargs["tools"] = _tool_schemas(tools)

        response = await self._get_client().messages.create(**kwargs)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments_json=json.dumps(block.input))
                )

        usage = getattr(response, "usage", None)
        token_usage = (usage.input_tokens + usage.output_tokens) if usage else None
        return GenerationResult(
            reply="".join(text_parts).strip(),
            token_usage=token_usage,
            tool_calls=tool_calls,
        )

    async def generate_stream(
        self,
        messages: list[dict[str, str]],
        settings: GenerationSettings,
    ) -> AsyncGenerator[StreamChunk, None]:
        kwargs = self._request_kwargs(messages, settings)
        async with self._get_client().messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield StreamChunk(delta=text)
            final = await stream.get_final_message()

        usage = getattr(final, "usage", None)
        token_usage = (usage.input_tokens + usage.output_tokens) if usage else None
        yield StreamChunk(delta="", done=True, token_usage=token_usage)
