"""
PHI pattern detection and redaction.

Used by the content guardrail (reject), the safety evaluator (redact before the
model sees anything) and job error messages (redact before persisting).
"""
from __future__ import annotations

import re

PHI_PATTERNS: dict[str, re.Pattern[str]] = {
    "uuid": re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE),
    "email": re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"(?<!\w)(?:\+\d{1,3}[\s.-]?)?(?:\(\d{2,4}\)|\d{2,4})[\s.-]\d{3,4}[\s.-]\d{3,4}(?!\w)"),
    # same separator on both sides, so a score like 57.5/100 is not a date
    "date": re.compile(r"\b(?:\d{4}-\d{2}-\d{2}|\d{1,2}([./])\d{1,2}\1\d{2,4})\b"),
    "mrn": re.compile(r"\bMRN[:#\s]*\w+", re.IGNORECASE),
}

_REDACTION_ORDER = ("uuid", "email", "ssn", "phone", "date", "mrn")


def find_phi(text: str) -> list[str]:
    """Return the names of PHI patterns present in *text* (sorted, unique)."""
    if not text:
        return []
    return sorted(name for name, pattern in PHI_PATTERNS.items() if pattern.search(text))


def redact_phi(text: str) -> str:
    if not text:
        return text
    out = text
    for name in _REDACTION_ORDER:
        out = PHI_PATTERNS[name].sub(f"[REDACTED-{name.upper()}]", out)
    return out


def redact_error_message(message: str, max_length: int = 500) -> str:
    """Redact identifiers from an error message and cap its length."""
    redacted = redact_phi(message or "")
    if len(redacted) > max_length:
        return redacted[: max_length - 3] + "..."
    return redacted
