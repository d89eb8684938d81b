"""Tests for the per-turn Orchestrator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from luna.errors import AdapterNotFoundError, StreamingUnsupportedError
from luna.llm.orchestrator import (
    SEARCH_MARKER,
    SEARCH_PERMISSION,
    SEARCH_RESULTS_HEADING,
    Orchestrator,
    ToolPhase,
    has_explicit_search_intent,
)
from luna.llm.prompt import CURRENT_QUESTION_DIRECTIVE, PromptComposer
from luna.llm.registry import AdapterRegistry
from luna.llm.types import AdapterKind, GenerationResult, GenerationSettings, StreamChunk, ToolCall
from luna.memory.context import MemoryContextAssembler
from luna.memory.models import ConversationSummary, LabeledMessage, MemoryContext, Message
from luna.memory.store import ConversationStore
from luna.records.context import RecordContextProvider
from luna.tools.base import ToolResult
from luna.tools.registry import ToolRegistry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SEARCH_CALL = ToolCall(id="tc1", name="web_search", arguments_json='{"query": "current weather"}')


def _tool_registry(handler=None) -> ToolRegistry:
    registry = ToolRegistry()

    async def web_search(query: str) -> ToolResult:
        return ToolResult(data={"results": [{"title": f"Result for {query}"}]})

    registry.tool(name="web_search", description="Search", category="research")(
        handler or web_search
    )
    return registry


def _orchestrator(adapter, *, tools=None, assembler=None, store=None, **kwargs) -> Orchestrator:
    registry = AdapterRegistry()
    registry.register(adapter, ["alias"])
    return Orchestrator(
        registry,
        PromptComposer(),
        assembler,
        store,
        tools,
        **kwargs,
    )


def _tool_then_reply(reply: str = "It is sunny.") -> list[GenerationResult]:
    return [
        GenerationResult(reply="", token_usage=10, tool_calls=[SEARCH_CALL]),
        GenerationResult(reply=reply, token_usage=20),
    ]


async def _collect(agen) -> list[StreamChunk]:
    return [chunk async for chunk in agen]


# ---------------------------------------------------------------------------
# Adapter resolution
# ---------------------------------------------------------------------------


async def test_unknown_model_fails_fast(make_adapter):
    orch = _orchestrator(make_adapter())
    with pytest.raises(AdapterNotFoundError) as exc_info:
        await orch.run("hi", "no-such-model")
    assert exc_info.value.model_id == "no-such-model"


async def test_resolves_alias(make_adapter):
    adapter = make_adapter(results=[GenerationResult(reply="hey")])
    reply = await _orchestrator(adapter).run("hi", " alias ")
    assert reply.reply == "hey"


# ---------------------------------------------------------------------------
# One-shot path
# ---------------------------------------------------------------------------


async def test_message_order(make_adapter):
    adapter = make_adapter()
    assembler = AsyncMock(spec=MemoryContextAssembler)
    assembler.build_context.return_value = MemoryContext(
        ordered_history=[LabeledMessage("system", "history block")], estimated_tokens=3
    )
    orch = _orchestrator(adapter, assembler=assembler)

    await orch.run("  what now?  ", "fake-cloud", session_id="s1", custom_prompt="Be brief.")

    messages = adapter.calls[0]["messages"]
    assert messages[0]["role"] == "system"
    assert messages[0]["content"].endswith(CURRENT_QUESTION_DIRECTIVE)
    assert "Be brief." in messages[0]["content"]
    assert messages[1] == {"role": "system", "content": "history block"}
    assert messages[-1] == {"role": "user", "content": "what now?"}


async def test_session_id_reaches_record_context(make_adapter):
    adapter = make_adapter()
    records = AsyncMock(spec=RecordContextProvider)
    records.generate_contextual_prompt.return_value = "## Care Records Summary"
    registry = AdapterRegistry()
    registry.register(adapter)
    orch = Orchestrator(registry, PromptComposer(records))

    await orch.run("and her appointments?", "fake-cloud", session_id="s1")

    records.generate_contextual_prompt.assert_awaited_once_with(
        adapter, "and her appointments?", session_id="s1"
    )
    assert adapter.calls[0]["messages"][0]["content"].startswith("## Care Records Summary")


async def test_no_tool_calls_returns_reply(make_adapter):
    adapter = make_adapter(results=[GenerationResult(reply="Hello!", token_usage=4)])
    reply = await _orchestrator(adapter, tools=_tool_registry()).run("hi", "fake-cloud")
    assert reply.reply == "Hello!"
    assert reply.token_usage == 4
    assert len(adapter.calls) == 1


async def test_cloud_adapter_gets_tools(make_adapter):
    adapter = make_adapter(kind=AdapterKind.CLOUD)
    await _orchestrator(adapter, tools=_tool_registry()).run("hi", "fake-cloud")
    tools = adapter.calls[0]["tools"]
    assert [t["name"] for t in tools] == ["web_search"]


async def test_local_adapter_never_gets_tools(make_adapter):
    adapter = make_adapter("phi3-mini", kind=AdapterKind.LOCAL)
    await _orchestrator(adapter, tools=_tool_registry()).run("search for the weather", "phi3-mini")
    assert adapter.calls[0]["tools"] is None


async def test_tool_round_trip(make_adapter):
    adapter = make_adapter(results=_tool_then_reply())
    orch = _orchestrator(adapter, tools=_tool_registry())

    reply = await orch.run("what's the weather?", "fake-cloud", custom_prompt="Custom.")

    assert reply.reply == SEARCH_MARKER + "It is sunny."
    assert reply.token_usage == 30
    assert len(adapter.calls) == 2

    follow_up = adapter.calls[1]
    assert follow_up["tools"] is None
    messages = follow_up["messages"]
    assert len(messages) == 3
    assert messages[0]["role"] == "system"
    assert "Custom." in messages[0]["content"]
    assert messages[0]["content"].endswith(SEARCH_PERMISSION)
    assert messages[1]["role"] == "system"
    assert messages[1]["content"].startswith(SEARCH_RESULTS_HEADING)
    assert "Result for current weather" in messages[1]["content"]
    assert messages[2] == {"role": "user", "content": "what's the weather?"}


async def test_follow_up_drops_memory_context(make_adapter):
    adapter = make_adapter(results=_tool_then_reply())
    assembler = AsyncMock(spec=MemoryContextAssembler)
    assembler.build_context.return_value = MemoryContext(
        ordered_history=[LabeledMessage("user", "old question")], estimated_tokens=3
    )
    orch = _orchestrator(adapter, tools=_tool_registry(), assembler=assembler)

    await orch.run("weather?", "fake-cloud", session_id="s1")

    first = [m["content"] for m in adapter.calls[0]["messages"]]
    second = [m["content"] for m in adapter.calls[1]["messages"]]
    assert "old question" in first
    assert "old question" not in second


async def test_never_more_than_two_adapter_calls(make_adapter):
    # The model keeps asking for tools; the follow-up must not honour it.
    adapter = make_adapter(
        results=[GenerationResult(reply="", tool_calls=[SEARCH_CALL])]
    )
    executions = []

    async def web_search(query: str) -> ToolResult:
        executions.append(query)
        return ToolResult(data={"results": []})

    orch = _orchestrator(adapter, tools=_tool_registry(web_search))
    reply = await orch.run("weather?", "fake-cloud")

    assert len(adapter.calls) == 2
    assert len(executions) == 1
    assert reply.reply.startswith(SEARCH_MARKER)


async def test_tool_exception_inlined_as_search_failed(make_adapter):
    class EchoResults(make_adapter):
        """Replies with whatever the search results block said."""

        async def generate(self, messages, settings, tools=None):
            await super().generate(messages, settings, tools)
            if len(self.calls) == 1:
                return GenerationResult(reply="", tool_calls=[SEARCH_CALL])
            return GenerationResult(reply=messages[1]["content"])

    adapter = EchoResults()
    tools = AsyncMock(spec=ToolRegistry)
    tools.__len__.return_value = 1
    tools.get_schemas.return_value = [{"name": "web_search", "description": "", "parameters": {}}]
    tools.execute.side_effect = RuntimeError("network unreachable")

    reply = await _orchestrator(adapter, tools=tools).run("current weather?", "fake-cloud")

    assert "search failed" in reply.reply
    assert "network unreachable" in reply.reply
    tools.execute.assert_awaited_once_with("web_search", {"query": "current weather"})


async def test_tool_error_result_inlined(make_adapter):
    adapter = make_adapter(results=_tool_then_reply())

    async def web_search(query: str) -> ToolResult:
        return ToolResult(error="Brave Search API returned 429")

    orch = _orchestrator(adapter, tools=_tool_registry(web_search))
    await orch.run("weather?", "fake-cloud")

    results_block = adapter.calls[1]["messages"][1]["content"]
    assert "search failed: Brave Search API returned 429" in results_block


async def test_bad_tool_arguments_inlined(make_adapter):
    bad_call = ToolCall(id="tc9", name="web_search", arguments_json="{oops")
    adapter = make_adapter(
        results=[
            GenerationResult(reply="", tool_calls=[bad_call, SEARCH_CALL]),
            GenerationResult(reply="done"),
        ]
    )
    await _orchestrator(adapter, tools=_tool_registry()).run("weather?", "fake-cloud")

    results_block = adapter.calls[1]["messages"][1]["content"]
    assert "search failed: invalid arguments" in results_block
    assert "Result for current weather" in results_block


async def test_explicit_intent_gate(make_adapter):
    adapter = make_adapter()
    orch = _orchestrator(adapter, tools=_tool_registry(), search_requires_explicit_intent=True)

    await orch.run("how are you", "fake-cloud")
    await orch.run("please look up the pharmacy hours", "fake-cloud")

    assert adapter.calls[0]["tools"] is None
    assert adapter.calls[1]["tools"] is not None


def test_has_explicit_search_intent():
    assert has_explicit_search_intent("Can you LOOK UP the bus times?")
    assert has_explicit_search_intent("what's the latest on the storm")
    assert not has_explicit_search_intent("how is mom feeling")


def test_tool_phase_values():
    assert {p.name for p in ToolPhase} == {"FIRST_PASS", "POST_TOOL"}


# ---------------------------------------------------------------------------
# Settings and persona
# ---------------------------------------------------------------------------


async def test_persona_defaults_merged_with_request(make_adapter, conversation_store):
    await conversation_store.save_persona(
        "gentle",
        "Gentle",
        "You are gentle.",
        GenerationSettings(temperature=0.3, max_tokens=200),
    )
    adapter = make_adapter()
    orch = _orchestrator(adapter, store=conversation_store)

    await orch.run(
        "hi", "fake-cloud", settings=GenerationSettings(temperature=0.9), persona_id="gentle"
    )

    call = adapter.calls[0]
    assert call["settings"].temperature == 0.9
    assert call["settings"].max_tokens == 200
    assert call["messages"][0]["content"].startswith("You are gentle.")


async def test_persona_failure_is_recovered(make_adapter):
    store = AsyncMock(spec=ConversationStore)
    store.get_persona.side_effect = RuntimeError("db down")
    adapter = make_adapter()
    orch = _orchestrator(adapter, store=store, persist_messages=False)

    reply = await orch.run("hi", "fake-cloud", persona_id="gentle")

    assert reply.reply == "ok"
    assert adapter.calls[0]["messages"][0]["content"] == CURRENT_QUESTION_DIRECTIVE


async def test_missing_persona_contributes_nothing(make_adapter, conversation_store):
    adapter = make_adapter()
    orch = _orchestrator(adapter, store=conversation_store)
    await orch.run("hi", "fake-cloud", persona_id="nope")
    assert adapter.calls[0]["messages"][0]["content"] == CURRENT_QUESTION_DIRECTIVE


# ---------------------------------------------------------------------------
# Persistence and memory
# ---------------------------------------------------------------------------


async def test_persists_user_and_assistant_messages(make_adapter, conversation_store):
    adapter = make_adapter(results=[GenerationResult(reply="Take it with food.", token_usage=9)])
    assembler = MemoryContextAssembler(conversation_store)
    orch = _orchestrator(adapter, assembler=assembler, store=conversation_store)

    await orch.run("how should dad take metformin?", "fake-cloud", session_id="s1")

    stored = await conversation_store.recent_messages("s1", limit=10)
    assert [(m.role, m.text) for m in stored] == [
        ("user", "how should dad take metformin?"),
        ("assistant", "Take it with food."),
    ]
    assert stored[1].token_usage == 9
    assert stored[1].model_id == "fake-cloud"
    assert stored[0].importance > 0.5


async def test_current_message_not_repeated_in_history(make_adapter, conversation_store):
    adapter = make_adapter()
    assembler = MemoryContextAssembler(conversation_store)
    orch = _orchestrator(adapter, assembler=assembler, store=conversation_store)

    await orch.run("first question", "fake-cloud", session_id="s1")
    await orch.run("second question", "fake-cloud", session_id="s1")

    contents = [m["content"] for m in adapter.calls[1]["messages"]]
    assert sum("second question" in c for c in contents) == 1
    assert any("first question" in c for c in contents[:-1])


async def test_persistence_can_be_disabled(make_adapter, conversation_store):
    orch = _orchestrator(make_adapter(), store=conversation_store, persist_messages=False)
    await orch.run("hi", "fake-cloud", session_id="s1")
    assert await conversation_store.recent_messages("s1", limit=10) == []


async def test_memory_failure_does_not_abort(make_adapter):
    store = AsyncMock(spec=ConversationStore)
    store.recent_messages.return_value = [
        Message("s1", "user", "earlier", id=1),
        Message("s1", "user", "now", id=2),
    ]
    store.recent_summaries.side_effect = RuntimeError("summaries table missing")
    store.top_pins.return_value = []
    adapter = make_adapter()
    orch = _orchestrator(adapter, assembler=MemoryContextAssembler(store), store=store)

    reply = await orch.run("now", "fake-cloud", session_id="s1")

    assert reply.reply == "ok"
    contents = [m["content"] for m in adapter.calls[0]["messages"]]
    assert "earlier" in contents


async def test_memory_budget_passed_to_assembler(make_adapter):
    assembler = AsyncMock(spec=MemoryContextAssembler)
    assembler.build_context.return_value = MemoryContext()
    orch = _orchestrator(make_adapter(), assembler=assembler, token_budget=1234)

    await orch.run("hi", "fake-cloud", session_id="s1")

    assembler.build_context.assert_awaited_once_with("s1", 1234, exclude_latest=False)


async def test_summaries_reach_the_prompt(make_adapter, conversation_store):
    await conversation_store.add_summary(
        ConversationSummary("sum1", "s1", "They discussed Dad's new walker.")
    )
    adapter = make_adapter()
    orch = _orchestrator(
        adapter, assembler=MemoryContextAssembler(conversation_store), store=conversation_store
    )

    await orch.run("any update?", "fake-cloud", session_id="s1")

    assert any("new walker" in m["content"] for m in adapter.calls[0]["messages"])


# ---------------------------------------------------------------------------
# Streaming path
# ---------------------------------------------------------------------------


async def test_stream_without_tools(make_adapter):
    adapter = make_adapter("phi3-mini", kind=AdapterKind.LOCAL, stream_deltas=["Hel", "lo"])
    orch = _orchestrator(adapter, tools=_tool_registry())

    chunks = await _collect(orch.run_stream("hi", "phi3-mini"))

    assert [c.delta for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].done is True
    assert chunks[-1].token_usage == 7
    assert adapter.calls == []
    assert len(adapter.stream_calls) == 1


async def test_stream_without_tool_calls_streams_original(make_adapter):
    adapter = make_adapter(results=[GenerationResult(reply="draft")])
    orch = _orchestrator(adapter, tools=_tool_registry())

    chunks = await _collect(orch.run_stream("hi", "fake-cloud"))

    assert "".join(c.delta for c in chunks) == "Hello"
    assert len(adapter.calls) == 1
    assert adapter.calls[0]["tools"] is not None
    assert adapter.stream_calls[0]["messages"] == adapter.calls[0]["messages"]


async def test_stream_counts_tool_check_usage_without_tool_calls(make_adapter):
    adapter = make_adapter(results=[GenerationResult(reply="draft", token_usage=5)])
    orch = _orchestrator(adapter, tools=_tool_registry())

    chunks = await _collect(orch.run_stream("hi", "fake-cloud"))

    assert chunks[-1].done is True
    assert chunks[-1].token_usage == 12


async def test_stream_marker_comes_first(make_adapter):
    adapter = make_adapter(results=_tool_then_reply(), stream_deltas=["Sun", "ny"])
    orch = _orchestrator(adapter, tools=_tool_registry())

    chunks = await _collect(orch.run_stream("weather?", "fake-cloud"))

    assert chunks[0].delta == SEARCH_MARKER
    assert "".join(c.delta for c in chunks[1:]) == "Sunny"
    assert chunks[-1].token_usage == 17
    # One tool check plus one streamed regeneration
    assert len(adapter.calls) == 1
    assert len(adapter.stream_calls) == 1
    streamed = adapter.stream_calls[0]["messages"]
    assert streamed[1]["content"].startswith(SEARCH_RESULTS_HEADING)


async def test_stream_runs_tools_concurrently(make_adapter):
    calls = [
        ToolCall(id=f"tc{i}", name="web_search", arguments_json=f'{{"query": "q{i}"}}')
        for i in range(3)
    ]
    adapter = make_adapter(results=[GenerationResult(reply="", tool_calls=calls)])
    running = 0
    peak = 0

    async def web_search(query: str) -> ToolResult:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return ToolResult(data={"q": query})

    orch = _orchestrator(adapter, tools=_tool_registry(web_search))
    await _collect(orch.run_stream("news?", "fake-cloud"))

    assert peak == 3
    block = adapter.stream_calls[0]["messages"][1]["content"]
    assert all(f"q{i}" in block for i in range(3))


async def test_stream_tool_failure_inlined(make_adapter):
    adapter = make_adapter(results=_tool_then_reply())

    async def web_search(query: str) -> ToolResult:
        raise RuntimeError("timeout")

    orch = _orchestrator(adapter, tools=_tool_registry(web_search))
    chunks = await _collect(orch.run_stream("weather?", "fake-cloud"))

    assert chunks[-1].done is True
    block = adapter.stream_calls[0]["messages"][1]["content"]
    assert "search failed" in block


async def test_stream_unsupported_raises(make_adapter):
    adapter = make_adapter(supports_streaming=False)
    orch = _orchestrator(adapter, tools=_tool_registry())

    with pytest.raises(StreamingUnsupportedError):
        await _collect(orch.run_stream("hi", "fake-cloud"))
    assert adapter.calls == []


async def test_stream_unknown_model(make_adapter):
    orch = _orchestrator(make_adapter())
    with pytest.raises(AdapterNotFoundError):
        await _collect(orch.run_stream("hi", "missing"))


async def test_stream_persists_reply(make_adapter, conversation_store):
    adapter = make_adapter(stream_deltas=["Good ", "morning"])
    orch = _orchestrator(adapter, store=conversation_store)

    await _collect(orch.run_stream("hi", "fake-cloud", session_id="s1"))

    stored = await conversation_store.recent_messages("s1", limit=10)
    assert [(m.role, m.text) for m in stored] == [("user", "hi"), ("assistant", "Good morning")]


async def test_closing_stream_closes_adapter_stream(make_adapter):
    adapter = make_adapter(stream_deltas=["a", "b", "c"])
    orch = _orchestrator(adapter)

    agen = orch.run_stream("hi", "fake-cloud")
    first = await anext(agen)
    assert first.delta == "a"
    await agen.aclose()

    assert adapter.stream_closed is True


async def test_cancel_stops_stream(make_adapter):
    adapter = make_adapter(stream_deltas=["a", "b", "c"])
    cancel = asyncio.Event()
    orch = _orchestrator(adapter)

    received = []
    async for chunk in orch.run_stream("hi", "fake-cloud", cancel=cancel):
        received.append(chunk.delta)
        cancel.set()

    assert received == ["a"]
    assert adapter.stream_closed is True


async def test_cancel_interrupts_stalled_adapter(make_adapter):
    class Stalled(make_adapter):
        async def generate_stream(self, messages, settings):
            try:
                yield StreamChunk(delta="start")
                await asyncio.sleep(30)
                yield StreamChunk(delta="never")
            finally:
                self.stream_closed = True

    adapter = Stalled()
    cancel = asyncio.Event()
    orch = _orchestrator(adapter)

    async def consume():
        return [c.delta async for c in orch.run_stream("hi", "fake-cloud", cancel=cancel)]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    cancel.set()
    received = await asyncio.wait_for(task, timeout=1)

    assert received == ["start"]
    assert adapter.stream_closed is True


async def test_cancel_before_stream_skips_adapter(make_adapter):
    adapter = make_adapter()
    cancel = asyncio.Event()
    cancel.set()

    chunks = await _collect(_orchestrator(adapter).run_stream("hi", "fake-cloud", cancel=cancel))

    assert chunks == []
    assert adapter.stream_calls == []
