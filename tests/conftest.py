"""Shared test fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from luna.llm.adapters.base import InferenceAdapter
from luna.llm.types import AdapterKind, GenerationResult, StreamChunk
from luna.memory.store import ConversationStore
from luna.records.store import RecordStore


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("luna.config.settings.turso_database_url", "")


@pytest.fixture
def conversation_store(tmp_path, _no_turso) -> ConversationStore:
    return ConversationStore(db_path=tmp_path / "test.db")


@pytest.fixture
def record_store(tmp_path, _no_turso) -> RecordStore:
    return RecordStore(db_path=tmp_path / "test.db")


class FakeAdapter(InferenceAdapter):
    """Scripted adapter that records every call it receives.

    ``results`` are returned by successive ``generate`` calls (the last one
    repeats). ``stream_deltas`` are yielded by ``generate_stream``.
    """

    def __init__(
        self,
        adapter_id: str = "fake-cloud",
        kind: AdapterKind = AdapterKind.CLOUD,
        results: list[GenerationResult] | None = None,
        stream_deltas: list[str] | None = None,
        supports_streaming: bool = True,
        display_name: str = "",
    ) -> None:
        self.id = adapter_id
        self.kind = kind
        self.display_name = display_name or adapter_id
        self.context_window_tokens = 8192
        self.supports_streaming = supports_streaming
        self._results = results or [GenerationResult(reply="ok")]
        self._stream_deltas = stream_deltas if stream_deltas is not None else ["Hel", "lo"]
        self.calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []
        self.stream_closed = False

    async def generate(self, messages, settings, tools=None) -> GenerationResult:
        self.calls.append({"messages": messages, "settings": settings, "tools": tools})
        index = min(len(self.calls) - 1, len(self._results) - 1)
        return self._results[index]

    async def generate_stream(self, messages, settings):
        self.stream_calls.append({"messages": messages, "settings": settings})
        try:
            for delta in self._stream_deltas:
                yield StreamChunk(delta=delta)
            yield StreamChunk(delta="", done=True, token_usage=7)
        finally:
            self.stream_closed = True


@pytest.fixture
def make_adapter():
    return FakeAdapter
