"""
Canonical registry of intervention topics mapped to risk factors.

Ranking only ever proposes topics defined here, each pointing at an internal
content key, so generated reports cannot invent interventions.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Mapping

from packages.shared.utils.hashing import compute_inputs_hash

INTERVENTION_REGISTRY_VERSION = "1.0.0"

_ALL_TIERS = ("tier-1-essential", "tier-2-5-enhanced", "tier-2-comprehensive")
_ENHANCED_TIERS = ("tier-2-5-enhanced", "tier-2-comprehensive")


@dataclass(frozen=True)
class InterventionTopicDefinition:
    topic_id: str
    topic_label: str
    pillar_key: str
    content_key: str
    target_risk_factors: tuple[str, ...]
    baseline_impact: int
    baseline_feasibility: int
    compatible_tiers: tuple[str, ...]


_TOPICS = (
    InterventionTopicDefinition(
        "stress-breathing-exercises", "Breathing Exercises for Stress Reduction", "mental-health",
        "breathing-exercises", ("stress", "anxiety", "mental-health"), 75, 90, _ALL_TIERS,
    ),
    InterventionTopicDefinition(
        "stress-mindfulness", "Mindfulness and Meditation", "mental-health",
        "mindfulness-meditation", ("stress", "anxiety", "mental-health"), 80, 70, _ALL_TIERS,
    ),
    InterventionTopicDefinition(
        "stress-physical-activity", "Physical Activity for Stress Relief", "movement",
        "stress-relief-exercise", ("stress", "mental-health", "movement"), 85, 75, _ALL_TIERS,
    ),
    InterventionTopicDefinition(
        "sleep-hygiene", "Sleep Hygiene Practices", "sleep",
        "sleep-hygiene", ("sleep", "stress", "mental-health"), 80, 85, _ALL_TIERS,
    ),
    InterventionTopicDefinition(
        "sleep-routine", "Consistent Sleep Routine", "sleep",
        "sleep-routine", ("sleep", "stress"), 75, 80, _ALL_TIERS,
    ),
    InterventionTopicDefinition(
        "social-support", "Building Social Support Networks", "social",
        "social-connections", ("social", "stress", "mental-health"), 70, 60, _ENHANCED_TIERS,
    ),
    InterventionTopicDefinition(
        "nutrition-stress", "Stress-Reducing Nutrition", "nutrition",
        "stress-nutrition", ("stress", "nutrition", "mental-health"), 65, 70, _ALL_TIERS,
    ),
    InterventionTopicDefinition(
        "meaning-values", "Values Clarification and Purpose", "meaning",
        "values-purpose", ("meaning", "stress", "mental-health"), 75, 50, _ENHANCED_TIERS,
    ),
    InterventionTopicDefinition(
        "prevention-stress-monitoring", "Regular Stress Level Monitoring", "prevention",
        "stress-monitoring", ("stress", "prevention"), 60, 95, _ALL_TIERS,
    ),
)

INTERVENTION_TOPICS: Mapping[str, InterventionTopicDefinition] = MappingProxyType(
    {t.topic_id: t for t in _TOPICS}
)

CONTENT_KEYS: frozenset[str] = frozenset(t.content_key for t in _TOPICS)


def get_intervention_topic(topic_id: str) -> InterventionTopicDefinition | None:
    return INTERVENTION_TOPICS.get(topic_id)


def interventions_for_risk_factor(factor_key: str) -> list[InterventionTopicDefinition]:
    return [t for t in INTERVENTION_TOPICS.values() if factor_key in t.target_risk_factors]


def is_compatible_with_tier(topic_id: str, tier: str) -> bool:
    topic = INTERVENTION_TOPICS.get(topic_id)
    return bool(topic and tier in topic.compatible_tiers)


def registry_hash() -> str:
    """Deterministic digest of the registry; list fields sorted so tuple order does not matter."""
    stable = {}
    for topic_id in sorted(INTERVENTION_TOPICS):
        entry = asdict(INTERVENTION_TOPICS[topic_id])
        entry["target_risk_factors"] = sorted(entry["target_risk_factors"])
        entry["compatible_tiers"] = sorted(entry["compatible_tiers"])
        stable[topic_id] = entry
    return compute_inputs_hash(INTERVENTION_REGISTRY_VERSION, stable)
