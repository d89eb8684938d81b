"""Lightweight intent detection for user queries."""

import re
from enum import StrEnum


class QueryType(StrEnum):
    MEDICATIONS = "medications"
    APPOINTMENTS = "appointments"
    VITALS = "vitals"
    GENERAL = "general"


_PATTERNS: list[tuple[QueryType, list[re.Pattern[str]]]] = [
    (
        QueryType.MEDICATIONS,
        [
            re.compile(r"\b(medications?|medicines?|drugs?|prescriptions?|rx|pills?|tablets?|doses?|dosages?)\b"),
            re.compile(r"\b(taking|prescribed|pharmacy|refills?)\b"),
        ],
    ),
    (
        QueryType.APPOINTMENTS,
        [
            re.compile(r"\b(appointments?|checkups?|check-ups?|schedule[ds]?|upcoming|visits?)\b"),
            re.compile(r"\b(see|seeing|visit)\b.*\bdoctor\b"),
        ],
    ),
    (
        QueryType.VITALS,
        [
            re.compile(r"\b(vitals?|glucose|blood sugar|weight|blood pressure|bp)\b"),
            re.compile(r"\b(measurements?|readings?)\b"),
        ],
    ),
]

_CARE_TERMS = re.compile(
    r"\b(patients?|caregivers?|caregiving|doctors?|health|care|insurance|"
    r"providers?|symptoms?|diagnos\w*|records?)\b"
)


def detect_query_type(query: str) -> QueryType:
    """Classify *query* by the first record category it mentions."""
    lowered = query.lower()
    for query_type, patterns in _PATTERNS:
        if any(p.search(lowered) for p in patterns):
            return query_type
    return QueryType.GENERAL


def mentions_care_terms(query: str) -> bool:
    return bool(_CARE_TERMS.search(query.lower()))
