"""
Validate the safety evaluator's structured output against its JSON schema.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema

_SCHEMA_DIR = Path(__file__).resolve().parent.parent.parent / "schemas"
SAFETY_OUTPUT_SCHEMA = "safety-check-output.schema.json"
_schema_cache: dict[str, dict] = {}


def load_schema(name: str = SAFETY_OUTPUT_SCHEMA) -> dict:
    if name not in _schema_cache:
        with open(_SCHEMA_DIR / name, "r", encoding="utf-8") as f:
            _schema_cache[name] = json.load(f)
    return _schema_cache[name]


def validate_output(data: Any, schema_name: str = SAFETY_OUTPUT_SCHEMA) -> tuple[bool, list[str]]:
    """
    Validate *data* against the named schema.
    Returns (is_valid, list_of_error_messages).
    """
    schema = load_schema(schema_name)
    validator = jsonschema.Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    messages = [f"{'→'.join(str(p) for p in e.absolute_path)}: {e.message}" for e in errors]
    return (len(messages) == 0, messages)


def validate_safety_output(data: Any) -> tuple[bool, list[str]]:
    return validate_output(data, SAFETY_OUTPUT_SCHEMA)
