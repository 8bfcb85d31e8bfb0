"""
Layer-1 medical validation rules.

Rules are addressed as ``rule_id@version`` and are immutable once registered.
A rule set, keyed by rules-engine version, lists the rule addresses it applies.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from packages.shared.models.enums import FindingSeverity, RuleKind


@dataclass(frozen=True)
class ValidationRule:
    rule_id: str
    version: str
    kind: str
    severity: FindingSeverity
    section_key: str  # a SectionKey value or "all"
    message_code: str
    pattern: Optional[str] = None
    keywords: tuple[str, ...] = ()
    risk_signals: tuple[str, ...] = ()
    conflicting_patterns: tuple[str, ...] = ()
    field: Optional[str] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    is_active: bool = True

    @property
    def key(self) -> str:
        return f"{self.rule_id}@{self.version}"

    def applies_to(self, section_key: str) -> bool:
        return self.section_key == "all" or self.section_key == section_key


class RuleRegistry:
    def __init__(self, rules: Iterable[ValidationRule] = (), rule_sets: Optional[Mapping[str, Iterable[str]]] = None):
        entries: dict[str, ValidationRule] = {}
        for rule in rules:
            existing = entries.get(rule.key)
            if existing is not None and existing != rule:
                raise ValueError(f"Rule {rule.key} is already registered with different logic")
            entries[rule.key] = rule
        self._rules: Mapping[str, ValidationRule] = MappingProxyType(entries)
        self._rule_sets: Mapping[str, tuple[str, ...]] = MappingProxyType(
            {version: tuple(keys) for version, keys in (rule_sets or {}).items()}
        )

    def get(self, rule_key: str) -> Optional[ValidationRule]:
        return self._rules.get(rule_key)

    def rule_set(self, engine_version: str) -> Optional[tuple[str, ...]]:
        return self._rule_sets.get(engine_version)

    def engine_versions(self) -> list[str]:
        return sorted(self._rule_sets)

    def with_rule_set(self, engine_version: str, rule_keys: Iterable[str]) -> "RuleRegistry":
        if engine_version in self._rule_sets:
            raise ValueError(f"Rule set {engine_version} already exists")
        sets = dict(self._rule_sets)
        sets[engine_version] = tuple(rule_keys)
        return RuleRegistry(self._rules.values(), sets)

    def with_rules(self, *rules: ValidationRule) -> "RuleRegistry":
        return RuleRegistry([*self._rules.values(), *rules], self._rule_sets)


DEFAULT_RULES: tuple[ValidationRule, ...] = (
    ValidationRule(
        rule_id="contraindication-high-stress-vigorous-exercise",
        version="v1.0.0",
        kind=RuleKind.CONTRAINDICATION.value,
        severity=FindingSeverity.WARNING,
        section_key="recommendations",
        message_code="VIGOROUS_EXERCISE_WITH_CRITICAL_STRESS",
        risk_signals=("risk_level_critical", "stress_critical"),
        conflicting_patterns=("vigorous exercise", "intensive training", "high-intensity", "hiit"),
    ),
    ValidationRule(
        rule_id="contraindication-sleep-deprivation-stimulants",
        version="v1.0.0",
        kind=RuleKind.CONTRAINDICATION.value,
        severity=FindingSeverity.WARNING,
        section_key="recommendations",
        message_code="STIMULANTS_WITH_POOR_SLEEP",
        risk_signals=("poor_sleep",),
        conflicting_patterns=("caffeine", "energy drinks", "stimulant", "coffee"),
    ),
    ValidationRule(
        rule_id="plausibility-contradictory-risk-level",
        version="v1.0.0",
        kind=RuleKind.PATTERN.value,
        severity=FindingSeverity.CRITICAL,
        section_key="all",
        message_code="CONTRADICTORY_RISK_LEVEL",
        pattern=(
            r"\b(low risk|minimal risk)\b.*\b(high risk|critical risk|severe)\b"
            r"|\b(high risk|critical risk)\b.*\b(low risk|minimal risk)\b"
        ),
    ),
    ValidationRule(
        rule_id="plausibility-unrealistic-score-claims",
        version="v1.0.0",
        kind=RuleKind.PATTERN.value,
        severity=FindingSeverity.CRITICAL,
        section_key="all",
        message_code="UNREALISTIC_CLAIM",
        pattern=r"(100%|\b(guarantee[sd]?|cure[sd]?|eliminate[sd]?|completely resolve[sd]?)\b)",
    ),
    ValidationRule(
        rule_id="out-of-bounds-risk-score",
        version="v1.0.0",
        kind=RuleKind.OUT_OF_BOUNDS.value,
        severity=FindingSeverity.CRITICAL,
        section_key="all",
        message_code="RISK_SCORE_OUT_OF_BOUNDS",
        field="risk_score",
        min_value=0,
        max_value=100,
    ),
    ValidationRule(
        rule_id="safety-no-diagnosis-claims",
        version="v1.0.0",
        kind=RuleKind.KEYWORD.value,
        severity=FindingSeverity.CRITICAL,
        section_key="all",
        message_code="DIAGNOSIS_CLAIM",
        keywords=(
            "you have been diagnosed",
            "you are diagnosed with",
            "diagnosis:",
            "medical diagnosis",
            "clinical diagnosis",
        ),
    ),
    ValidationRule(
        rule_id="safety-no-medication-prescription",
        version="v1.0.0",
        kind=RuleKind.KEYWORD.value,
        severity=FindingSeverity.CRITICAL,
        section_key="recommendations",
        message_code="MEDICATION_PRESCRIPTION",
        keywords=("prescribe", "prescription for", "take medication", "start taking", "dosage of"),
    ),
)

DEFAULT_RULE_SETS: Mapping[str, tuple[str, ...]] = {
    "v1.0.0": tuple(rule.key for rule in DEFAULT_RULES),
}

DEFAULT_RULE_REGISTRY = RuleRegistry(DEFAULT_RULES, DEFAULT_RULE_SETS)
