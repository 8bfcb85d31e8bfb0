"""
Environment-driven pipeline settings.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class PipelineSettings:
    risk_algorithm_version: str = "v1.0.0"
    ranking_top_n: int = 5
    content_prompt_version: str = "v1.0.0"
    rules_engine_version: str = "v1.0.0"
    safety_prompt_version: str = "v1.0.0"
    safety_model: str = "claude-sonnet-4-5-20250929"
    safety_timeout_seconds: float = 30.0
    safety_max_attempts: int = 2
    anthropic_api_key: str | None = None
    pdf_max_attempts: int = 2
    delivery_max_attempts: int = 3
    delivery_backoff_seconds: float = 0.5
    delivery_max_triggers: int = 5
    delivery_claim_lease_seconds: float = 300.0
    auth_enforcement: bool = False


def load_settings() -> PipelineSettings:
    """Build settings from the current environment."""
    return PipelineSettings(
        risk_algorithm_version=os.getenv("RISK_ALGORITHM_VERSION", "v1.0.0"),
        ranking_top_n=max(1, min(10, _parse_int_env("RANKING_TOP_N", 5))),
        content_prompt_version=os.getenv("CONTENT_PROMPT_VERSION", "v1.0.0"),
        rules_engine_version=os.getenv("RULES_ENGINE_VERSION", "v1.0.0"),
        safety_prompt_version=os.getenv("SAFETY_PROMPT_VERSION", "v1.0.0"),
        safety_model=os.getenv("SAFETY_MODEL", "claude-sonnet-4-5-20250929"),
        safety_timeout_seconds=_parse_float_env("SAFETY_TIMEOUT_SECONDS", 30.0),
        safety_max_attempts=max(1, _parse_int_env("SAFETY_MAX_ATTEMPTS", 2)),
        anthropic_api_key=(os.getenv("ANTHROPIC_API_KEY") or "").strip() or None,
        pdf_max_attempts=max(1, _parse_int_env("PDF_MAX_ATTEMPTS", 2)),
        delivery_max_attempts=max(1, _parse_int_env("DELIVERY_MAX_ATTEMPTS", 3)),
        delivery_backoff_seconds=_parse_float_env("DELIVERY_BACKOFF_SECONDS", 0.5),
        delivery_max_triggers=max(1, _parse_int_env("DELIVERY_MAX_TRIGGERS", 5)),
        delivery_claim_lease_seconds=_parse_float_env("DELIVERY_CLAIM_LEASE_SECONDS", 300.0),
        auth_enforcement=_parse_bool_env("AUTH_ENFORCEMENT", False),
    )
