"""
Versioned risk scoring configurations and their evaluator.

Configs are registered once at import and never mutated. A new scoring
behaviour requires a new algorithm version key.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from packages.shared.errors import RiskCalculationError
from packages.shared.models.enums import RiskLevel, ScoringOperator


@dataclass(frozen=True)
class ScoringRule:
    operator: ScoringOperator
    questions: tuple[str, ...] = ()
    weights: tuple[tuple[str, float], ...] = ()
    params: tuple[tuple[str, Any], ...] = ()

    def param(self, name: str) -> Any:
        return dict(self.params).get(name)


@dataclass(frozen=True)
class FactorConfig:
    key: str
    label: str
    rule: ScoringRule


@dataclass(frozen=True)
class ScoringConfig:
    algorithm_version: str
    factors: tuple[FactorConfig, ...]
    overall: ScoringRule
    level_thresholds: tuple[tuple[float, RiskLevel], ...] = field(
        default=(
            (75.0, RiskLevel.CRITICAL),
            (50.0, RiskLevel.HIGH),
            (25.0, RiskLevel.MODERATE),
        )
    )

    def factor_weight(self, key: str) -> float:
        return dict(self.overall.weights).get(key, 0.0)


_V1 = ScoringConfig(
    algorithm_version="v1.0.0",
    factors=(
        FactorConfig(
            key="stress",
            label="Stress load",
            rule=ScoringRule(
                ScoringOperator.NORMALIZE,
                questions=("stress_q1", "stress_q2", "stress_q3", "stress_q4"),
                params=(("min", 0), ("max", 16)),
            ),
        ),
        FactorConfig(
            key="sleep",
            label="Sleep quality",
            rule=ScoringRule(
                ScoringOperator.NORMALIZE,
                questions=("sleep_q1", "sleep_q2"),
                params=(("min", 0), ("max", 8)),
            ),
        ),
        FactorConfig(
            key="social",
            label="Social connection",
            rule=ScoringRule(
                ScoringOperator.NORMALIZE,
                questions=("social_q1", "social_q2"),
                params=(("min", 0), ("max", 8)),
            ),
        ),
    ),
    overall=ScoringRule(
        ScoringOperator.WEIGHTED_SUM,
        weights=(("stress", 0.5), ("sleep", 0.3), ("social", 0.2)),
    ),
)

SCORING_CONFIGS: Mapping[str, ScoringConfig] = MappingProxyType({_V1.algorithm_version: _V1})


def get_scoring_config(algorithm_version: str) -> ScoringConfig:
    config = SCORING_CONFIGS.get(algorithm_version)
    if config is None:
        raise RiskCalculationError(
            f"Unknown risk algorithm version {algorithm_version}",
            code="UNKNOWN_ALGORITHM_VERSION",
        )
    return config


def _numeric_answer(answers: Mapping[str, Any], question_id: str) -> float:
    if question_id not in answers or answers[question_id] is None:
        raise RiskCalculationError(f"Missing answer for {question_id}", code="MISSING_ANSWER")
    value = answers[question_id]
    # bool is an int subclass; a yes/no answer is not a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RiskCalculationError(f"Non-numeric answer for {question_id}", code="INVALID_ANSWER")
    return float(value)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def evaluate_rule(rule: ScoringRule, values: Mapping[str, Any]) -> float:
    """
    Evaluate one rule against *values*.

    For factor rules *values* are the raw answers; for the overall rule they
    are the already-computed factor scores.
    """
    op = rule.operator
    if op in (ScoringOperator.SUM, ScoringOperator.AVERAGE, ScoringOperator.MAX, ScoringOperator.MIN):
        if not rule.questions:
            raise RiskCalculationError(f"{op.value} without questions", code="INVALID_SCORING_RULE")
        nums = [_numeric_answer(values, q) for q in rule.questions]
        if op == ScoringOperator.SUM:
            return sum(nums)
        if op == ScoringOperator.AVERAGE:
            return sum(nums) / len(nums)
        if op == ScoringOperator.MAX:
            return max(nums)
        return min(nums)

    if op == ScoringOperator.WEIGHTED_SUM:
        if not rule.weights:
            raise RiskCalculationError("WEIGHTED_SUM without weights", code="INVALID_SCORING_RULE")
        return sum(_numeric_answer(values, key) * weight for key, weight in rule.weights)

    if op == ScoringOperator.NORMALIZE:
        low, high = rule.param("min"), rule.param("max")
        if low is None or high is None or high <= low or not rule.questions:
            raise RiskCalculationError("NORMALIZE needs questions and min < max", code="INVALID_SCORING_RULE")
        raw = sum(_numeric_answer(values, q) for q in rule.questions)
        return _clamp((raw - low) / (high - low) * 100.0)

    if op == ScoringOperator.THRESHOLD:
        # thresholds: ((limit, score), ...) checked highest limit first
        thresholds = rule.param("thresholds")
        if not thresholds or not rule.questions:
            raise RiskCalculationError("THRESHOLD needs questions and thresholds", code="INVALID_SCORING_RULE")
        raw = sum(_numeric_answer(values, q) for q in rule.questions)
        for limit, score in sorted(thresholds, key=lambda t: t[0], reverse=True):
            if raw >= limit:
                return float(score)
        return 0.0

    raise RiskCalculationError(f"Unsupported scoring operator {op}", code="UNKNOWN_OPERATOR")


def classify_level(score: float, config: ScoringConfig) -> RiskLevel:
    for threshold, level in config.level_thresholds:
        if score >= threshold:
            return level
    return RiskLevel.LOW
