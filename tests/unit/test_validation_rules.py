from __future__ import annotations

import pytest

from apps.worker.lib.rule_registry import DEFAULT_RULE_REGISTRY, DEFAULT_RULES, RuleRegistry, ValidationRule
from apps.worker.steps.step01_risk import calculate_risk_bundle
from apps.worker.steps.step04_validation import risk_signals, validate_sections
from packages.shared.models.enums import FindingSeverity, RuleKind, ValidationOutcome
from tests.support import STANDARD_ANSWERS


@pytest.fixture
def bundle():
    return calculate_risk_bundle("job-1", STANDARD_ANSWERS, "v1.0.0")


def _validate(sections, bundle, registry=DEFAULT_RULE_REGISTRY, version="v1.0.0"):
    return validate_sections(sections, bundle, version, "digest", registry)


def test_signals_include_poor_sleep_and_critical_stress(bundle):
    signals = risk_signals(bundle)
    assert {"poor_sleep", "stress_critical", "risk_level_high"} <= signals


def test_clean_sections_pass(bundle):
    payload = _validate([("overview", "Your overall score is 57.5 of 100.")], bundle)
    assert payload.result == ValidationOutcome.PASS
    assert payload.findings == []
    assert payload.rules_evaluated == len(DEFAULT_RULES)


def test_unrealistic_claim_fails(bundle):
    payload = _validate([("overview", "This plan will cure your stress.")], bundle)
    assert payload.result == ValidationOutcome.FAIL
    assert [f.message_code for f in payload.findings] == ["UNREALISTIC_CLAIM"]


def test_prescription_keyword_only_applies_to_recommendations(bundle):
    text = "Start taking a supplement."
    assert _validate([("overview", text)], bundle).result == ValidationOutcome.PASS
    assert _validate([("recommendations", text)], bundle).result == ValidationOutcome.FAIL


def test_contraindication_warning_does_not_fail(bundle):
    payload = _validate([("recommendations", "Have a coffee before bed.")], bundle)
    assert payload.result == ValidationOutcome.PASS
    assert [(f.message_code, f.severity) for f in payload.findings] == [
        ("STIMULANTS_WITH_POOR_SLEEP", FindingSeverity.WARNING)
    ]


def test_finding_ids_are_deterministic(bundle):
    a = _validate([("overview", "guaranteed results")], bundle)
    b = _validate([("overview", "guaranteed results")], bundle)
    assert a.findings[0].finding_id == b.findings[0].finding_id


def test_unknown_rule_key_is_unknown(bundle):
    registry = DEFAULT_RULE_REGISTRY.with_rule_set("v9", ["missing-rule@v1.0.0"])
    payload = _validate([("overview", "fine")], bundle, registry, "v9")
    assert payload.result == ValidationOutcome.UNKNOWN
    assert payload.unknown_reason == "UNKNOWN_RULE_KEY:missing-rule@v1.0.0"


def test_unknown_engine_version_is_unknown(bundle):
    payload = _validate([("overview", "fine")], bundle, version="v0.0.1")
    assert payload.result == ValidationOutcome.UNKNOWN
    assert payload.unknown_reason.startswith("UNKNOWN_ENGINE_VERSION")


def test_empty_rule_set_is_unknown(bundle):
    registry = DEFAULT_RULE_REGISTRY.with_rule_set("empty", [])
    assert _validate([("overview", "fine")], bundle, registry, "empty").unknown_reason == "EMPTY_RULE_SET"


@pytest.mark.parametrize(
    "rule, reason",
    [
        (
            ValidationRule("bad-pattern", "v1", RuleKind.PATTERN.value, FindingSeverity.CRITICAL, "all", "X", pattern="("),
            "INVALID_PATTERN:bad-pattern@v1",
        ),
        (
            ValidationRule("odd-kind", "v1", "semantic", FindingSeverity.CRITICAL, "all", "X"),
            "UNKNOWN_RULE_KIND:semantic",
        ),
        (
            ValidationRule(
                "no-field", "v1", RuleKind.OUT_OF_BOUNDS.value, FindingSeverity.CRITICAL, "all", "X", field="bmi"
            ),
            "MISSING_FIELD:no-field@v1",
        ),
    ],
)
def test_undecidable_rules_resolve_to_unknown(bundle, rule, reason):
    registry = RuleRegistry([rule], {"v1": [rule.key]})
    payload = _validate([("overview", "fine")], bundle, registry, "v1")
    assert payload.result == ValidationOutcome.UNKNOWN
    assert payload.unknown_reason == reason


def test_inactive_rules_are_skipped(bundle):
    rule = ValidationRule(
        "off", "v1", RuleKind.KEYWORD.value, FindingSeverity.CRITICAL, "all", "X", keywords=("fine",), is_active=False
    )
    payload = _validate([("overview", "fine")], bundle, RuleRegistry([rule], {"v1": [rule.key]}), "v1")
    assert payload.result == ValidationOutcome.PASS
    assert payload.rules_evaluated == 0


def test_rules_are_immutable_per_address():
    rule = DEFAULT_RULES[0]
    changed = ValidationRule(**{**rule.__dict__, "severity": FindingSeverity.CRITICAL})
    with pytest.raises(ValueError):
        DEFAULT_RULE_REGISTRY.with_rules(changed)
