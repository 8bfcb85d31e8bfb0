"""
Canonical JSON and content hashes used as idempotency keys.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel


def _to_plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def canonical_json(value: Any) -> str:
    """Serialize *value* with sorted keys and no insignificant whitespace."""
    return json.dumps(
        _to_plain(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_to_plain,
    )


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_inputs_hash(*parts: Any) -> str:
    """
    Hash an ordered tuple of inputs.

    Each part is serialized canonically, so dict key order and model field
    order never change the digest.
    """
    combined = "|".join(canonical_json(p) for p in parts)
    return sha256_text(combined)


def stable_id(prefix: str, *parts: Any) -> str:
    """Short deterministic identifier, e.g. for findings inside a payload."""
    return f"{prefix}_{compute_inputs_hash(*parts)[:16]}"
