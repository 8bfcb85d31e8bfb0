"""
LLM capability for the layer-2 safety check.

The evaluator is an opaque, possibly-unavailable collaborator:
``evaluate(prompt, schema)`` returns parsed JSON, or raises
``TransientTransportFailure`` (unavailable / timed out) or ``SchemaViolation``
(unparseable output). Schema checking of the parsed output happens in the stage.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import anthropic

from packages.shared.config import PipelineSettings, load_settings
from packages.shared.errors import PipelineError, SchemaViolation, TransientTransportFailure

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(frozen=True)
class SafetyPrompt:
    system: str
    user: str


class SafetyEvaluator(Protocol):
    model_config: dict[str, Any]

    def evaluate(self, prompt: SafetyPrompt, schema: dict) -> Any: ...


def parse_model_json(text: str) -> Any:
    """Parse a JSON object out of model text, tolerating a markdown fence."""
    cleaned = _FENCE_RE.sub("", (text or "").strip())
    if not cleaned:
        raise SchemaViolation("Model returned empty output", code="EMPTY_OUTPUT")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise SchemaViolation(f"Model output is not JSON: {exc.msg}", code="UNPARSEABLE_OUTPUT") from exc


class AnthropicSafetyEvaluator:
    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        client: Optional[anthropic.Anthropic] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or anthropic.Anthropic(api_key=api_key, max_retries=0)

    @property
    def model_config(self) -> dict[str, Any]:
        return {
            "provider": "anthropic",
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def evaluate(self, prompt: SafetyPrompt, schema: dict) -> Any:
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=prompt.system,
                messages=[{"role": "user", "content": prompt.user}],
            )
        except (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError) as exc:
            raise TransientTransportFailure(f"Model call failed: {type(exc).__name__}", code="MODEL_UNAVAILABLE") from exc
        except anthropic.APIStatusError as exc:
            raise PipelineError(f"Model rejected request with status {exc.status_code}", code="MODEL_ERROR") from exc

        text = "".join(getattr(block, "text", "") for block in response.content if block.type == "text")
        return parse_model_json(text)


def build_default_evaluator(settings: PipelineSettings | None = None) -> Optional[SafetyEvaluator]:
    """Anthropic evaluator from settings, or None when no API key is configured."""
    settings = settings or load_settings()
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set; safety checks will resolve to UNKNOWN")
        return None
    return AnthropicSafetyEvaluator(api_key=settings.anthropic_api_key, model=settings.safety_model)
