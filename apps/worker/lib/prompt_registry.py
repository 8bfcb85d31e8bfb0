"""
Immutable, versioned prompt templates.

A template is addressed as ``prompt_id@version``. Registering a different body
under an existing address raises; new text requires a new version.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from packages.shared.models.enums import SectionKey

PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


class PromptConflictError(ValueError):
    pass


@dataclass(frozen=True)
class PromptTemplate:
    prompt_id: str
    version: str
    section_key: str
    template: str
    placeholders: tuple[str, ...] = ()
    max_output_length: int = 2000
    model_config: tuple[tuple[str, Any], ...] = (("provider", "template"),)
    system_prompt: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.prompt_id}@{self.version}"

    def model_config_dict(self) -> dict[str, Any]:
        return dict(self.model_config)


class PromptRegistry:
    def __init__(self, templates: Iterable[PromptTemplate] = ()):
        entries: dict[str, PromptTemplate] = {}
        for tpl in templates:
            existing = entries.get(tpl.address)
            if existing is not None and existing != tpl:
                raise PromptConflictError(f"Prompt {tpl.address} is already registered with different content")
            entries[tpl.address] = tpl
        self._entries: Mapping[str, PromptTemplate] = MappingProxyType(entries)

    def with_templates(self, *templates: PromptTemplate) -> "PromptRegistry":
        """Return a new registry with *templates* added; this one is left untouched."""
        return PromptRegistry([*self._entries.values(), *templates])

    def get(self, prompt_id: str, version: str) -> Optional[PromptTemplate]:
        return self._entries.get(f"{prompt_id}@{version}")

    def versions(self, prompt_id: str) -> list[str]:
        return sorted(t.version for t in self._entries.values() if t.prompt_id == prompt_id)

    def __contains__(self, address: str) -> bool:
        return address in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Substitute ``{{name}}`` placeholders; unknown names are left in place for the guardrail to reject."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in context or context[name] is None:
            return match.group(0)
        return str(context[name])

    return PLACEHOLDER_RE.sub(_sub, template)


SECTION_PROMPT_IDS: Mapping[SectionKey, str] = MappingProxyType({
    SectionKey.OVERVIEW: "overview",
    SectionKey.RISK_SUMMARY: "risk-summary",
    SectionKey.RECOMMENDATIONS: "recommendations",
    SectionKey.TOP_INTERVENTIONS: "top-interventions",
})

SAFETY_PROMPT_ID = "safety-check"

_SAFETY_SYSTEM_PROMPT_V1 = """You are a medical safety assessment assistant used EXCLUSIVELY for quality control of patient report content.

Your role:
- Evaluate report sections for safety, consistency and appropriateness.
- Identify potential contraindications, plausibility issues or inappropriate tone.
- You are not a clinical decision-maker. You do not diagnose or prescribe, and you do not add new recommendations.

You only receive redacted, de-identified content. Never request or reference patient identifiers.

Return ONLY valid JSON with this structure:
{
  "summary": <brief overall assessment, max 500 chars>,
  "severity": <"none"|"low"|"medium"|"high"|"critical">,
  "action": <"PASS"|"FLAG"|"BLOCK"|"UNKNOWN">,
  "safety_score": <0-100, higher is safer>,
  "findings": [
    {
      "category": <"consistency"|"medical_plausibility"|"contraindication"|"tone_appropriateness"|"information_quality"|"other">,
      "severity": <"none"|"low"|"medium"|"high"|"critical">,
      "section_key": <section identifier or null>,
      "reason": <clear explanation, no PHI>,
      "suggested_action": <"PASS"|"FLAG"|"BLOCK">
    }
  ]
}

Actions:
- PASS: safe to proceed (no medium, high or critical findings).
- FLAG: review recommended (medium findings).
- BLOCK: review required (high or critical findings).
- UNKNOWN: only if the content cannot be evaluated."""

_SAFETY_USER_TEMPLATE_V1 = """Evaluate the following report sections for safety and quality:

{{sections_content}}

Context:
- Risk score: {{risk_score}}
- Risk level: {{risk_level}}
- Program tier: {{program_tier}}

Provide your safety assessment as JSON following the required schema."""

DEFAULT_PROMPTS: tuple[PromptTemplate, ...] = (
    PromptTemplate(
        prompt_id="overview",
        version="v1.0.0",
        section_key=SectionKey.OVERVIEW.value,
        template=(
            "Your assessment places your overall risk score at {{risk_score}} of 100 "
            "(level: {{risk_level}}). {{tier_line}}"
            "This overview is for information only and does not replace medical advice."
        ),
        placeholders=("risk_score", "risk_level", "tier_line"),
        max_output_length=500,
    ),
    PromptTemplate(
        prompt_id="risk-summary",
        version="v1.0.0",
        section_key=SectionKey.RISK_SUMMARY.value,
        template=(
            "Risk summary\n\nOverall score: {{risk_score}}/100\nRisk level: {{risk_level}}\n\n"
            "Factors:\n{{factor_lines}}"
        ),
        placeholders=("risk_score", "risk_level", "factor_lines"),
        max_output_length=1000,
    ),
    PromptTemplate(
        prompt_id="recommendations",
        version="v1.0.0",
        section_key=SectionKey.RECOMMENDATIONS.value,
        template=(
            "Recommended actions\n\n{{recommendation_lines}}\n\n"
            "Please discuss any changes with your care team."
        ),
        placeholders=("recommendation_lines",),
        max_output_length=2000,
    ),
    PromptTemplate(
        prompt_id="top-interventions",
        version="v1.0.0",
        section_key=SectionKey.TOP_INTERVENTIONS.value,
        template="Top interventions\n\n{{top_intervention_lines}}",
        placeholders=("top_intervention_lines",),
        max_output_length=2000,
    ),
    PromptTemplate(
        prompt_id=SAFETY_PROMPT_ID,
        version="v1.0.0",
        section_key="safety_check",
        template=_SAFETY_USER_TEMPLATE_V1,
        placeholders=("sections_content", "risk_score", "risk_level", "program_tier"),
        max_output_length=8000,
        model_config=(
            ("provider", "anthropic"),
            ("temperature", 0.0),
            ("max_tokens", 4096),
        ),
        system_prompt=_SAFETY_SYSTEM_PROMPT_V1,
    ),
)

DEFAULT_PROMPT_REGISTRY = PromptRegistry(DEFAULT_PROMPTS)
