from __future__ import annotations

import pytest

from apps.worker.lib.scoring_rules import (
    ScoringRule,
    classify_level,
    evaluate_rule,
    get_scoring_config,
)
from apps.worker.steps.step01_risk import calculate_risk_bundle
from packages.shared.errors import RiskCalculationError
from packages.shared.models.enums import RiskLevel, ScoringOperator
from packages.shared.utils.hashing import canonical_json
from tests.support import STANDARD_ANSWERS


def test_standard_answers_score_as_expected():
    payload = calculate_risk_bundle("job-1", STANDARD_ANSWERS, "v1.0.0", "tier-1-essential")
    scores = {f.key: (f.score, f.risk_level) for f in payload.factors}
    assert scores == {
        "stress": (75.0, RiskLevel.CRITICAL),
        "sleep": (50.0, RiskLevel.HIGH),
        "social": (25.0, RiskLevel.MODERATE),
    }
    assert payload.overall_score == 57.5
    assert payload.risk_level == RiskLevel.HIGH


def test_identical_inputs_give_identical_payloads():
    a = calculate_risk_bundle("job-1", STANDARD_ANSWERS, "v1.0.0")
    b = calculate_risk_bundle("job-1", dict(reversed(list(STANDARD_ANSWERS.items()))), "v1.0.0")
    assert canonical_json(a) == canonical_json(b)


def test_missing_answer_fails_closed():
    answers = dict(STANDARD_ANSWERS)
    del answers["sleep_q2"]
    with pytest.raises(RiskCalculationError) as exc:
        calculate_risk_bundle("job-1", answers, "v1.0.0")
    assert exc.value.code == "MISSING_ANSWER"


def test_boolean_answer_is_rejected():
    answers = dict(STANDARD_ANSWERS, stress_q1=True)
    with pytest.raises(RiskCalculationError) as exc:
        calculate_risk_bundle("job-1", answers, "v1.0.0")
    assert exc.value.code == "INVALID_ANSWER"


def test_unknown_algorithm_version():
    with pytest.raises(RiskCalculationError) as exc:
        get_scoring_config("v9.9.9")
    assert exc.value.code == "UNKNOWN_ALGORITHM_VERSION"


@pytest.mark.parametrize(
    "operator, expected",
    [
        (ScoringOperator.SUM, 6.0),
        (ScoringOperator.AVERAGE, 2.0),
        (ScoringOperator.MAX, 3.0),
        (ScoringOperator.MIN, 1.0),
    ],
)
def test_aggregate_operators(operator, expected):
    rule = ScoringRule(operator, questions=("a", "b", "c"))
    assert evaluate_rule(rule, {"a": 1, "b": 2, "c": 3}) == expected


def test_threshold_operator_picks_highest_limit_reached():
    rule = ScoringRule(
        ScoringOperator.THRESHOLD,
        questions=("a", "b"),
        params=(("thresholds", ((2, 20.0), (5, 60.0), (8, 90.0))),),
    )
    assert evaluate_rule(rule, {"a": 3, "b": 3}) == 60.0
    assert evaluate_rule(rule, {"a": 0, "b": 1}) == 0.0


def test_normalize_clamps_to_range():
    rule = ScoringRule(ScoringOperator.NORMALIZE, questions=("a",), params=(("min", 0), ("max", 4)))
    assert evaluate_rule(rule, {"a": 10}) == 100.0


def test_rule_without_parameters_fails_closed():
    with pytest.raises(RiskCalculationError) as exc:
        evaluate_rule(ScoringRule(ScoringOperator.NORMALIZE, questions=("a",)), {"a": 1})
    assert exc.value.code == "INVALID_SCORING_RULE"


def test_level_thresholds():
    config = get_scoring_config("v1.0.0")
    assert classify_level(75, config) == RiskLevel.CRITICAL
    assert classify_level(74.99, config) == RiskLevel.HIGH
    assert classify_level(25, config) == RiskLevel.MODERATE
    assert classify_level(24.99, config) == RiskLevel.LOW
