from __future__ import annotations

import pytest

from apps.worker.lib.retry_policy import no_sleep
from apps.worker.lib.safety_evaluator import SafetyPrompt, build_default_evaluator, parse_model_json
from apps.worker.pipeline_context import PipelineDeps
from apps.worker.steps.step05_safety import evaluate_sections, reconcile
from packages.shared.config import PipelineSettings
from packages.shared.errors import SchemaViolation, TransientTransportFailure
from packages.shared.models.enums import SafetyAction, SafetySeverity
from packages.shared.schema_validator import validate_safety_output
from tests.support import PASS_OUTPUT, FakeEvaluator, HangingEvaluator

PROMPT = SafetyPrompt(system="system", user="user")


def _finding(severity, category="consistency"):
    return {"category": category, "severity": severity, "section_key": "overview", "reason": "r"}


def _deps(evaluator, **overrides):
    settings = PipelineSettings(**{"safety_timeout_seconds": 5.0, **overrides})
    return PipelineDeps(settings=settings, evaluator=evaluator, sleep=no_sleep)


def test_pass_output_is_schema_valid():
    assert validate_safety_output(PASS_OUTPUT) == (True, [])


def test_schema_rejects_extra_fields_and_bad_enums():
    ok, messages = validate_safety_output({**PASS_OUTPUT, "action": "MAYBE", "extra": 1})
    assert not ok
    assert len(messages) == 2


def test_high_finding_escalates_model_pass_to_block():
    payload = reconcile({**PASS_OUTPUT, "findings": [_finding("high")]})
    assert payload.action == SafetyAction.BLOCK
    assert payload.model_action == SafetyAction.PASS
    assert payload.severity == SafetySeverity.HIGH


def test_medium_finding_escalates_to_flag():
    assert reconcile({**PASS_OUTPUT, "findings": [_finding("medium")]}).action == SafetyAction.FLAG


def test_stricter_model_action_wins():
    payload = reconcile({**PASS_OUTPUT, "action": "BLOCK", "findings": [_finding("low")]})
    assert payload.action == SafetyAction.BLOCK


def test_parse_model_json_tolerates_fences():
    assert parse_model_json('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(SchemaViolation):
        parse_model_json("not json")
    with pytest.raises(SchemaViolation):
        parse_model_json("   ")


def test_no_evaluator_is_unknown():
    payload = evaluate_sections(_deps(None), PROMPT)
    assert payload.action == SafetyAction.UNKNOWN
    assert payload.unknown_reason == "MODEL_UNAVAILABLE"


def test_missing_prompt_is_unknown():
    assert evaluate_sections(_deps(FakeEvaluator()), None).unknown_reason == "PROMPT_NOT_FOUND"


def test_schema_invalid_output_is_unknown():
    payload = evaluate_sections(_deps(FakeEvaluator([{"action": "PASS"}])), PROMPT)
    assert payload.action == SafetyAction.UNKNOWN
    assert payload.unknown_reason == "SCHEMA_VIOLATION"


def test_unparseable_output_is_unknown():
    evaluator = FakeEvaluator([SchemaViolation("bad", code="UNPARSEABLE_OUTPUT")])
    assert evaluate_sections(_deps(evaluator), PROMPT).unknown_reason == "UNPARSEABLE_OUTPUT"


def test_transient_failure_is_retried():
    evaluator = FakeEvaluator([TransientTransportFailure("down"), PASS_OUTPUT])
    payload = evaluate_sections(_deps(evaluator, safety_max_attempts=2), PROMPT)
    assert payload.action == SafetyAction.PASS
    assert len(evaluator.prompts) == 2


def test_timeout_is_unknown_never_pass():
    evaluator = HangingEvaluator()
    try:
        payload = evaluate_sections(_deps(evaluator, safety_timeout_seconds=0.05, safety_max_attempts=2), PROMPT)
    finally:
        evaluator.release.set()
    assert payload.action == SafetyAction.UNKNOWN
    assert payload.unknown_reason == "TIMEOUT"
    assert evaluator.calls >= 1


def test_unexpected_evaluator_error_is_unknown():
    payload = evaluate_sections(_deps(FakeEvaluator([RuntimeError("boom")])), PROMPT)
    assert payload.action == SafetyAction.UNKNOWN
    assert payload.unknown_reason == "EVALUATOR_ERROR:RuntimeError"


def test_default_evaluator_requires_api_key():
    assert build_default_evaluator(PipelineSettings(anthropic_api_key=None)) is None
