"""Trust tiers for sensitive record disclosure."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from luna.llm.types import AdapterKind

if TYPE_CHECKING:
    from luna.llm.adapters.base import InferenceAdapter


class TrustTier(StrEnum):
    FULL = "full"
    BASIC = "basic"


@dataclass(frozen=True)
class TrustPolicy:
    """Immutable allow-list of cloud adapters granted full disclosure.

    The tier depends only on the adapter's kind and ID, never on session
    or user state.
    """

    trusted_ids: frozenset[str] = field(default_factory=frozenset)

    def tier_for(self, adapter: InferenceAdapter) -> TrustTier:
        if adapter.kind == AdapterKind.LOCAL:
            return TrustTier.FULL
        if adapter.id in self.trusted_ids:
            return TrustTier.FULL
        return TrustTier.BASIC
