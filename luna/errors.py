"""Exceptions raised by the conversation engine.

Only adapter resolution and capability mismatches are fatal. Failures in
optional context sources (memory, persona, record context) are caught and
logged where they happen, so they have no public exception type.
"""


class LunaError(Exception):
    """Base class for all Luna errors."""


class AdapterNotFoundError(LunaError):
    """No adapter is registered under the requested model ID or alias."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f'Adapter for model "{model_id}" not found.')


class StreamingUnsupportedError(LunaError):
    """Streaming was requested from an adapter that cannot stream."""

    def __init__(self, adapter_id: str) -> None:
        self.adapter_id = adapter_id
        super().__init__(f'Adapter "{adapter_id}" does not support streaming.')


class ToolExecutionError(LunaError):
    """A tool call could not produce a result.

    Never escapes a turn: the orchestrator converts it into inline text.
    """

    def __init__(self, tool_name: str, reason: str) -> None:
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Tool '{tool_name}' failed: {reason}")
