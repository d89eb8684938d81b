"""System prompt assembly."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from luna.llm.adapters.base import InferenceAdapter
    from luna.llm.types import Persona
    from luna.records.context import RecordContextProvider

logger = logging.getLogger(__name__)

CURRENT_QUESTION_DIRECTIVE = (
    "IMPORTANT: Respond only to the user's current message. Everything above, "
    "including earlier conversation, summaries, remembered facts and records, "
    "is background context. Do not answer earlier questions again or continue "
    "earlier topics unless the current message asks for it."
)


class PromptComposer:
    """Builds the system prompt for one turn.

    Parts, in order: persona prompt, document context, care records, the
    caller's custom prompt, then the current-question directive. Empty parts
    are skipped and the directive is always last.
    """

    def __init__(self, record_provider: RecordContextProvider | None = None) -> None:
        self._records = record_provider

    async def document_context(self, user_input: str) -> str:
        """Hook for retrieved document context. No document source exists yet."""
        return ""

    async def record_context(
        self, adapter: InferenceAdapter, user_input: str, session_id: str | None = None
    ) -> str:
        if self._records is None:
            return ""
        return await self._records.generate_contextual_prompt(
            adapter, user_input, session_id=session_id
        )

    async def build_system_prompt(
        self,
        adapter: InferenceAdapter,
        user_input: str,
        persona: Persona | None = None,
        custom_prompt: str = "",
        session_id: str | None = None,
    ) -> str:
        parts = [
            persona.system_prompt if persona else "",
            await self.document_context(user_input),
            await self.record_context(adapter, user_input, session_id),
            custom_prompt,
            CURRENT_QUESTION_DIRECTIVE,
        ]
        prompt = "\n\n".join(p.strip() for p in parts if p and p.strip())
        logger.debug("System prompt for %s: %d chars", adapter.id, len(prompt))
        return prompt
