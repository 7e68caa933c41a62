"""Deterministic intent routing for incoming chat text.

Patterns are evaluated on the lower-cased, stripped message in a fixed
order: negation, clarification, GitHub URL, generic URL, freeform. The
first match wins. Negation is checked before clarification purely because
of table order; nothing else depends on that choice.
"""

import re

from mira.models.schemas import Intent

URL_PATTERN = re.compile(r"https?://[^\s<>\"')\]]+", re.IGNORECASE)

GITHUB_URL_PATTERN = re.compile(
    r"https?://(?:www\.)?github\.com/[\w.-]+/[\w.-]+", re.IGNORECASE,
)

NEGATION_PATTERNS = [
    re.compile(r"\b(?:don'?t|do not|doesn'?t|does not|didn'?t|did not)\b"),
    re.compile(r"\b(?:not|never|no longer|without)\b"),
    re.compile(r"\b(?:isn'?t|aren'?t|wasn'?t|weren'?t|can'?t|cannot|won'?t|shouldn'?t)\b"),
    re.compile(r"^no\b"),
]

CLARIFICATION_PATTERNS = re.compile(
    r"\b(?:what do you mean|what does (?:that|this|it) mean|clarify|explain (?:that|this|it|more)"
    r"|elaborate|can you explain|could you explain|in other words|more detail|i don'?t understand"
    r"|what is meant by|rephrase)\b"
)

# Evaluation order is the routing contract.
_ROUTES = (
    (Intent.NEGATION, lambda t: any(p.search(t) for p in NEGATION_PATTERNS)),
    (Intent.CLARIFICATION, lambda t: bool(CLARIFICATION_PATTERNS.search(t))),
    (Intent.GITHUB_URL_SCAN, lambda t: bool(GITHUB_URL_PATTERN.search(t))),
    (Intent.PLAIN_URL_SCAN, lambda t: bool(URL_PATTERN.search(t))),
)


def classify(text: str) -> Intent:
    """Return the single route for ``text``. Unmatched or empty text is freeform."""
    lowered = (text or "").lower().strip()
    if not lowered:
        return Intent.FREEFORM
    for intent, matches in _ROUTES:
        if matches(lowered):
            return intent
    return Intent.FREEFORM


def extract_urls(text: str) -> list[str]:
    """Return every http(s) URL in ``text`` in order of appearance, trailing punctuation stripped."""
    return [u.rstrip(".,;:!?") for u in URL_PATTERN.findall(text or "")]
