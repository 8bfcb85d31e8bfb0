from __future__ import annotations

import re
from typing import Iterable

from apps.worker.lib.prompt_registry import PLACEHOLDER_RE
from packages.shared.utils.redaction import find_phi

CONTENT_REF_RE = re.compile(r"content:([a-z0-9][a-z0-9-]*)")
MIN_ECHO_LENGTH = 4
TRUNCATION_SUFFIX = "..."


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def free_text_values(answers: dict) -> list[str]:
    """String answers long enough to be identifying if echoed back."""
    values = []
    for key in sorted(answers or {}):
        value = answers[key]
        if isinstance(value, str) and len(_normalize(value)) >= MIN_ECHO_LENGTH:
            values.append(_normalize(value))
    return values


def find_violations(
    draft: str,
    free_texts: Iterable[str],
    known_content_keys: Iterable[str],
) -> list[str]:
    """
    Return violation codes for *draft*, empty when acceptable.

    Codes: UNRESOLVED_PLACEHOLDER, PHI_<PATTERN>, UNKNOWN_CONTENT_REF,
    FREE_TEXT_ECHO.
    """
    violations: list[str] = []
    if PLACEHOLDER_RE.search(draft):
        violations.append("UNRESOLVED_PLACEHOLDER")
    for name in find_phi(draft):
        violations.append(f"PHI_{name.upper()}")
    known = set(known_content_keys)
    if any(ref not in known for ref in CONTENT_REF_RE.findall(draft)):
        violations.append("UNKNOWN_CONTENT_REF")
    normalized = _normalize(draft)
    if any(value in normalized for value in free_texts):
        violations.append("FREE_TEXT_ECHO")
    return violations


def truncate_at_word(draft: str, max_length: int) -> tuple[str, bool]:
    if len(draft) <= max_length:
        return draft, False
    cut = draft[: max_length - len(TRUNCATION_SUFFIX)]
    space = cut.rfind(" ")
    if space > 0:
        cut = cut[:space]
    return cut.rstrip() + TRUNCATION_SUFFIX, True
