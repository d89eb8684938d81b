"""Keyword-weighted importance scoring for stored messages."""

_QUESTION_STARTS = ("what", "how", "why", "when", "who")

# (bonus, keywords); each group contributes at most once
_KEYWORD_GROUPS: list[tuple[float, tuple[str, ...]]] = [
    (0.25, ("feeling", "mood", "depress", "anxiety", "stress", "worried", "overwhelmed")),
    (0.2, ("medication", "prescription", "dosage", "side effect", "treatment", "doctor",
           "appointment", "pharmacy")),
    (0.15, ("mom", "mother", "dad", "father", "caregiver", "family", "spouse")),
    (0.3, ("crisis", "emergency", "urgent", "help me", "can't cope", "fall", "hospital")),
    (0.1, ("error", "problem", "issue")),
]

_BASE_SCORE = 0.5
_LONG_MESSAGE_CHARS = 200


def score_importance(text: str, role: str = "user") -> float:
    """Score a message in [0, 1]. Higher means more worth keeping in context."""
    lowered = text.lower().strip()
    score = _BASE_SCORE

    if "?" in lowered or lowered.startswith(_QUESTION_STARTS):
        score += 0.2

    for bonus, keywords in _KEYWORD_GROUPS:
        if any(k in lowered for k in keywords):
            score += bonus

    if len(lowered) > _LONG_MESSAGE_CHARS:
        score += 0.1

    if role == "assistant":
        score += 0.05

    return min(score, 1.0)
