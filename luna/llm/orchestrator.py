"""Per-turn orchestration: context, generation and the single tool round-trip.

A turn moves through COMPOSE -> GENERATE and then either finishes or, when
the model asks for tools, EXECUTE_TOOLS -> REGENERATE. The regeneration call
runs in ``ToolPhase.POST_TOOL``, where no tools can be attached, so a turn
makes at most two adapter calls.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from luna.errors import AdapterNotFoundError, StreamingUnsupportedError, ToolExecutionError
from luna.llm.types import AdapterKind, AgentReply, GenerationSettings, StreamChunk
from luna.memory.importance import score_importance
from luna.memory.models import MemoryContext, Message

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from luna.llm.adapters.base import InferenceAdapter
    from luna.llm.prompt import PromptComposer
    from luna.llm.registry import AdapterRegistry
    from luna.llm.types import Persona, ToolCall
    from luna.memory.context import MemoryContextAssembler
    from luna.memory.store import ConversationStore
    from luna.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

SEARCH_MARKER = "[SEARCHING_ONLINE]\n\n"
SEARCH_PERMISSION = (
    "You have access to current search results. Use them to provide accurate, "
    "up-to-date information."
)
SEARCH_RESULTS_HEADING = "Current search results:"

EXPLICIT_SEARCH_TRIGGERS = (
    "search online",
    "search for",
    "look up",
    "find online",
    "check online",
    "google",
    "what is the current",
    "what are the current",
    "what's the current",
    "what is the latest",
    "what are the latest",
    "what's the latest",
    "recent ",
    "recently",
    "today's",
    "this week",
    "this month",
    "up-to-date",
    "real-time",
    "live ",
    "breaking news",
    "go online",
    "browse",
    "web search",
)


def has_explicit_search_intent(text: str) -> bool:
    lowered = text.lower()
    return any(trigger in lowered for trigger in EXPLICIT_SEARCH_TRIGGERS)


class ToolPhase(Enum):
    FIRST_PASS = "first_pass"
    POST_TOOL = "post_tool"


@dataclass
class _Turn:
    """Everything resolved before the first adapter call."""

    adapter: InferenceAdapter
    settings: GenerationSettings
    system_prompt: str
    messages: list[dict[str, str]]
    user_input: str
    session_id: str | None


async def _until_cancelled(
    stream: AsyncGenerator[StreamChunk, None], cancel: asyncio.Event | None
) -> AsyncGenerator[StreamChunk, None]:
    """Relay *stream* until it ends or *cancel* is set.

    A pending read is abandoned as soon as *cancel* fires, so a stalled
    adapter cannot hold the turn open.
    """
    if cancel is None:
        async for chunk in stream:
            yield chunk
        return

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        while not cancel.is_set():
            step = asyncio.ensure_future(anext(stream))
            done, _ = await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if step not in done:
                step.cancel()
                await asyncio.wait({step})
                return
            try:
                chunk = step.result()
            except StopAsyncIteration:
                return
            yield chunk
    finally:
        waiter.cancel()


class Orchestrator:
    """Runs one conversational turn against a registered adapter.

    Every collaborator is injected. Memory, persona and record context are
    optional enrichments: their failures are logged and the turn carries on
    without them. Only an unknown model or a streaming mismatch is fatal.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        composer: PromptComposer,
        assembler: MemoryContextAssembler | None = None,
        conversation_store: ConversationStore | None = None,
        tools: ToolRegistry | None = None,
        *,
        token_budget: int = 3000,
        persist_messages: bool = True,
        search_requires_explicit_intent: bool = False,
    ) -> None:
        self._registry = registry
        self._composer = composer
        self._assembler = assembler
        self._conversations = conversation_store
        self._tools = tools
        self._token_budget = token_budget
        self._persist = persist_messages
        self._explicit_search_only = search_requires_explicit_intent

    # -- Public API --------------------------------------------------------------

    async def run(
        self,
        user_input: str,
        model_id: str,
        settings: GenerationSettings | None = None,
        persona_id: str | None = None,
        session_id: str | None = None,
        custom_prompt: str = "",
    ) -> AgentReply:
        """Produce the complete reply for one turn."""
        turn = await self._prepare(
            user_input, model_id, settings, persona_id, session_id, custom_prompt,
            streaming=False,
        )
        adapter = turn.adapter

        tools = self._tools_for(adapter, turn.user_input, ToolPhase.FIRST_PASS)
        result = await adapter.generate(turn.messages, turn.settings, tools)
        usage = result.token_usage
        reply = result.reply

        if result.has_tool_calls:
            logger.info("Model %s requested %d tool call(s)", adapter.id, len(result.tool_calls))
            outputs = [await self._execute_tool(call) for call in result.tool_calls]
            follow_up = self._post_tool_messages(turn, outputs)
            final = await adapter.generate(
                follow_up, turn.settings, self._tools_for(adapter, "", ToolPhase.POST_TOOL)
            )
            usage = _add_usage(usage, final.token_usage)
            reply = final.reply
            await self._remember(turn, "assistant", reply, usage)
            return AgentReply(reply=SEARCH_MARKER + reply, token_usage=usage)

        await self._remember(turn, "assistant", reply, usage)
        return AgentReply(reply=reply, token_usage=usage)

    async def run_stream(
        self,
        user_input: str,
        model_id: str,
        settings: GenerationSettings | None = None,
        persona_id: str | None = None,
        session_id: str | None = None,
        custom_prompt: str = "",
        cancel: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Stream the reply for one turn.

        When tools are available, a non-streaming tool check runs first; if it
        requests tools they are executed concurrently, the search marker is
        yielded, and the tools-free follow-up is streamed. Otherwise the
        original messages are streamed. Setting *cancel*, or closing this
        generator, closes the adapter stream.
        """
        turn = await self._prepare(
            user_input, model_id, settings, persona_id, session_id, custom_prompt,
            streaming=True,
        )
        adapter = turn.adapter
        messages = turn.messages
        usage: int | None = None

        tools = self._tools_for(adapter, turn.user_input, ToolPhase.FIRST_PASS)
        if tools:
            first = await adapter.generate(messages, turn.settings, tools)
            usage = first.token_usage
            if first.has_tool_calls:
                logger.info(
                    "Tool check for %s requested %d tool call(s)",
                    adapter.id,
                    len(first.tool_calls),
                )
                yield StreamChunk(delta=SEARCH_MARKER)
                outputs = await asyncio.gather(
                    *(self._execute_tool(call) for call in first.tool_calls)
                )
                messages = self._post_tool_messages(turn, list(outputs))

        if cancel is not None and cancel.is_set():
            logger.info("Turn for %s cancelled before streaming", adapter.id)
            return

        stream = adapter.generate_stream(messages, turn.settings)
        relay = _until_cancelled(stream, cancel)
        parts: list[str] = []
        try:
            async for chunk in relay:
                if chunk.delta:
                    parts.append(chunk.delta)
                if chunk.done:
                    usage = _add_usage(usage, chunk.token_usage)
                    await self._remember(turn, "assistant", "".join(parts).strip(), usage)
                    yield StreamChunk(delta=chunk.delta, done=True, token_usage=usage)
                    return
                yield chunk
        finally:
            await relay.aclose()
            await stream.aclose()
            if cancel is not None and cancel.is_set():
                logger.info("Stream for %s cancelled after %d chunk(s)", adapter.id, len(parts))

    # -- Turn preparation --------------------------------------------------------

    async def _prepare(
        self,
        user_input: str,
        model_id: str,
        settings: GenerationSettings | None,
        persona_id: str | None,
        session_id: str | None,
        custom_prompt: str,
        *,
        streaming: bool,
    ) -> _Turn:
        adapter = self._registry.resolve(model_id)
        if adapter is None:
            raise AdapterNotFoundError(model_id)
        if streaming and not adapter.supports_streaming:
            raise StreamingUnsupportedError(adapter.id)

        user_input = user_input.strip()
        persona = await self._load_persona(persona_id)
        defaults = persona.defaults if persona else GenerationSettings()
        merged = defaults.merged_with(settings)

        stored = False
        if session_id and user_input:
            stored = await self._append(
                session_id, "user", user_input, adapter.id, score_importance(user_input, "user")
            )

        system_prompt, memory = await asyncio.gather(
            self._composer.build_system_prompt(
                adapter, user_input, persona, custom_prompt, session_id=session_id
            ),
            self._memory(session_id, exclude_latest=stored),
        )

        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(memory.to_api_messages())
        if user_input:
            messages.append({"role": "user", "content": user_input})

        logger.info(
            "Turn for %s: %d messages, persona=%s, memory ~%d tokens",
            adapter.id,
            len(messages),
            persona.id if persona else None,
            memory.estimated_tokens,
        )
        return _Turn(
            adapter=adapter,
            settings=merged,
            system_prompt=system_prompt,
            messages=messages,
            user_input=user_input,
            session_id=session_id,
        )

    async def _load_persona(self, persona_id: str | None) -> Persona | None:
        if not persona_id or self._conversations is None:
            return None
        try:
            persona = await self._conversations.get_persona(persona_id)
        except Exception:
            logger.exception("Persona lookup failed for %s; continuing without it", persona_id)
            return None
        if persona is None:
            logger.warning("Persona %s not found", persona_id)
        return persona

    async def _memory(self, session_id: str | None, *, exclude_latest: bool) -> MemoryContext:
        if not session_id or self._assembler is None:
            return MemoryContext()
        return await self._assembler.build_context(
            session_id, self._token_budget, exclude_latest=exclude_latest
        )

    # -- Tools -------------------------------------------------------------------

    def _tools_for(
        self, adapter: InferenceAdapter, user_input: str, phase: ToolPhase
    ) -> list[dict[str, Any]] | None:
        """Tool definitions to attach, or None.

        Only first-pass calls to cloud adapters get tools.
        """
        if phase is not ToolPhase.FIRST_PASS:
            return None
        if adapter.kind is not AdapterKind.CLOUD:
            return None
        if not self._tools:
            return None
        if self._explicit_search_only and not has_explicit_search_intent(user_input):
            logger.debug("No explicit search intent; withholding tools")
            return None
        return self._tools.get_schemas()

    async def _execute_tool(self, call: ToolCall) -> str:
        """Run one tool call. Failures become inline ``search failed`` text."""
        try:
            return await self._invoke_tool(call)
        except ToolExecutionError as exc:
            logger.warning("%s", exc)
            return f"search failed: {exc.reason}"
        except Exception as exc:
            logger.exception("Tool '%s' raised", call.name)
            return f"search failed: {str(exc) or type(exc).__name__}"

    async def _invoke_tool(self, call: ToolCall) -> str:
        if self._tools is None:
            raise ToolExecutionError(call.name, "no tools are available")
        try:
            arguments = call.parsed_arguments()
        except ValueError as exc:
            raise ToolExecutionError(call.name, f"invalid arguments: {exc}") from exc

        result = await self._tools.execute(call.name, arguments)
        if not result.success:
            raise ToolExecutionError(call.name, result.error or "unknown error")

        label = arguments.get("query") or call.name
        return f'Search results for "{label}":\n{result.to_content()}'

    @staticmethod
    def _post_tool_messages(turn: _Turn, outputs: list[str]) -> list[dict[str, str]]:
        """Minimal message list for the regeneration call.

        Memory context is deliberately left out to bound prompt growth.
        """
        system_prompt = "\n\n".join(p for p in (turn.system_prompt, SEARCH_PERMISSION) if p)
        results = "\n\n".join(outputs)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "system", "content": f"{SEARCH_RESULTS_HEADING}\n{results}"},
        ]
        if turn.user_input:
            messages.append({"role": "user", "content": turn.user_input})
        return messages

    # -- Persistence -------------------------------------------------------------

    async def _remember(
        self, turn: _Turn, role: str, text: str, token_usage: int | None
    ) -> None:
        if not turn.session_id or not text:
            return
        await self._append(
            turn.session_id,
            role,
            text,
            turn.adapter.id,
            score_importance(text, role),
            token_usage,
        )

    async def _append(
        self,
        session_id: str,
        role: str,
        text: str,
        model_id: str,
        importance: float,
        token_usage: int | None = None,
    ) -> bool:
        """Persist one message. Returns False when storage is off or failed."""
        if not self._persist or self._conversations is None:
            return False
        try:
            await self._conversations.append_message(
                Message(
                    session_id=session_id,
                    role=role,
                    text=text,
                    importance=importance,
                    model_id=model_id,
                    token_usage=token_usage,
                )
            )
        except Exception:
            logger.exception("Failed to store %s message for session %s", role, session_id)
            return False
        return True


def _add_usage(first: int | None, second: int | None) -> int | None:
    if first is None:
        return second
    if second is None:
        return first
    return first + second
