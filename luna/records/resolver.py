"""Scored resolution of the subject a query refers to.

Candidates are ranked exact-name > exact-relationship > partial-name >
partial-relationship. Ties break on name then ID so the ranking never
depends on database row order.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from luna.records.models import Patient
    from luna.records.store import RecordStore

logger = logging.getLogger(__name__)

# Familiar terms â the relationship value stored on a patient
RELATIONSHIP_KEYWORDS: dict[str, str] = {
    "dad": "father",
    "father": "father",
    "papa": "father",
    "mom": "mother",
    "mother": "mother",
    "mama": "mother",
    "parent": "parent",
    "spouse": "spouse",
    "wife": "wife",
    "husband": "husband",
    "grandma": "grandmother",
    "grandmother": "grandmother",
    "grandpa": "grandfather",
    "grandfather": "grandfather",
}

_STOPWORDS = frozenset({
    "the", "and", "for", "with", "about", "what", "when", "where", "which", "who",
    "how", "why", "this", "that", "these", "those", "are", "was", "were", "has",
    "have", "had", "does", "did", "his", "her", "hers", "him", "she", "they",
    "them", "their", "you", "your", "can", "could", "should", "would", "any",
    "all", "not", "now", "today", "tell", "please", "there", "from", "into",
})

_TOKEN_RE = re.compile(r"[a-z][a-z'’\-]*")
_POSSESSIVE_RE = re.compile(r"['’]s$")
MIN_TOKEN_LENGTH = 3


class MatchKind(IntEnum):
    """Match strength; higher wins."""

    PARTIAL_RELATIONSHIP = 1
    PARTIAL_NAME = 2
    EXACT_RELATIONSHIP = 3
    EXACT_NAME = 4


@dataclass(frozen=True)
class SubjectMatch:
    patient: Patient
    kind: MatchKind


def query_tokens(query: str) -> list[str]:
    """Distinct lowercase words longer than two characters, in query order.

    Possessives are reduced to their base word ("dad's" -> "dad").
    """
    seen: list[str] = []
    for token in _TOKEN_RE.findall(query.lower()):
        token = _POSSESSIVE_RE.sub("", token).strip("'’-")
        if len(token) >= MIN_TOKEN_LENGTH and token not in seen:
            seen.append(token)
    return seen


def relationship_terms(query: str) -> list[str]:
    """Stored relationship values implied by familiar terms in *query*."""
    terms: list[str] = []
    for token in query_tokens(query):
        role = RELATIONSHIP_KEYWORDS.get(token)
        if role and role not in terms:
            terms.append(role)
    return terms


def classify(patient: Patient, query: str) -> MatchKind | None:
    """How strongly *patient* is referenced by *query*, or None."""
    lowered = query.lower()
    name = patient.name.lower().strip()
    tokens = query_tokens(query)
    relationship = (patient.relationship or "").lower().strip()

    if name and re.search(rf"\b{re.escape(name)}\b", lowered):
        return MatchKind.EXACT_NAME
    if relationship and (
        relationship in relationship_terms(query) or relationship in tokens
    ):
        return MatchKind.EXACT_RELATIONSHIP

    keywords = [t for t in tokens if t not in _STOPWORDS]
    if any(t in name for t in keywords):
        return MatchKind.PARTIAL_NAME
    if relationship and any(t in relationship for t in keywords):
        return MatchKind.PARTIAL_RELATIONSHIP
    return None


class SubjectMatcher:
    """Finds which patient, if any, a free-text query is about."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def rank(self, query: str) -> list[SubjectMatch]:
        """Return every referenced patient, strongest match first."""
        lookups = relationship_terms(query)
        lookups += [
            t for t in query_tokens(query)
            if t not in _STOPWORDS and t not in RELATIONSHIP_KEYWORDS
        ]
        if not lookups:
            return []

        results = await asyncio.gather(
            *(self._store.find_patient_candidates(term) for term in lookups)
        )

        candidates: dict[str, Patient] = {}
        for found in results:
            for patient in found:
                candidates.setdefault(patient.id, patient)

        matches = []
        for patient in candidates.values():
            kind = classify(patient, query)
            if kind is not None:
                matches.append(SubjectMatch(patient=patient, kind=kind))

        matches.sort(key=lambda m: (-m.kind, m.patient.name.lower(), m.patient.id))
        if matches:
            logger.debug(
                "Subject candidates for %r: %s",
                query,
                ", ".join(f"{m.patient.name}={m.kind.name}" for m in matches),
            )
        return matches

    async def resolve(self, query: str) -> Patient | None:
        """The top-ranked patient, or None on zero matches."""
        matches = await self.rank(query)
        return matches[0].patient if matches else None
