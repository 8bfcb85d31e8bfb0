from __future__ import annotations

import pytest

from apps.worker.lib.intervention_registry import CONTENT_KEYS, INTERVENTION_TOPICS, registry_hash
from apps.worker.steps.step01_risk import calculate_risk_bundle
from apps.worker.steps.step02_ranking import rank_interventions
from packages.shared.errors import RankingError
from packages.shared.utils.hashing import canonical_json
from tests.support import STANDARD_ANSWERS


@pytest.fixture
def bundle():
    return calculate_risk_bundle("job-1", STANDARD_ANSWERS, "v1.0.0", "tier-1-essential")


def test_ranking_order_and_priorities(bundle):
    ranking = rank_interventions(bundle, "bundle-1", "tier-1-essential", top_n=5)
    ordered = [(r.topic.topic_id, r.priority_score) for r in ranking.ranked_interventions]
    assert ordered == [
        ("sleep-hygiene", 95),
        ("sleep-routine", 86),
        ("stress-breathing-exercises", 86),
        ("stress-physical-activity", 83),
        ("stress-mindfulness", 74),
        ("prevention-stress-monitoring", 69),
        ("nutrition-stress", 60),
    ]
    assert [r.rank for r in ranking.ranked_interventions] == list(range(1, 8))
    assert len(ranking.top_interventions) == 5


def test_tier_filter_excludes_enhanced_topics(bundle):
    ranking = rank_interventions(bundle, "bundle-1", "tier-1-essential")
    ids = {r.topic.topic_id for r in ranking.ranked_interventions}
    assert "social-support" not in ids
    assert "meaning-values" not in ids


def test_without_tier_every_matching_topic_is_a_candidate(bundle):
    ranking = rank_interventions(bundle, "bundle-1", None, top_n=10)
    assert len(ranking.ranked_interventions) == len(INTERVENTION_TOPICS)


def test_signals_explain_scores(bundle):
    top = rank_interventions(bundle, "bundle-1", "tier-1-essential").ranked_interventions[0]
    assert "multiple_risk_factors" in top.impact.signals
    assert "high_impact_potential" in top.impact.signals
    assert "tier_1_recommended" in top.feasibility.signals


def test_ranking_is_deterministic(bundle):
    a = rank_interventions(bundle, "bundle-1", "tier-1-essential")
    b = rank_interventions(bundle, "bundle-1", "tier-1-essential")
    assert canonical_json(a) == canonical_json(b)


def test_ranked_topics_point_at_registry_content(bundle):
    ranking = rank_interventions(bundle, "bundle-1", None, top_n=10)
    assert all(r.topic.content_key in CONTENT_KEYS for r in ranking.ranked_interventions)
    assert ranking.registry_hash == registry_hash()


@pytest.mark.parametrize("top_n", [0, 11])
def test_top_n_bounds(bundle, top_n):
    with pytest.raises(RankingError) as exc:
        rank_interventions(bundle, "bundle-1", None, top_n=top_n)
    assert exc.value.code == "INVALID_TOP_N"


def test_no_candidates(bundle):
    bundle = bundle.model_copy(
        update={"factors": [f.model_copy(update={"key": "unrelated"}) for f in bundle.factors]}
    )
    with pytest.raises(RankingError) as exc:
        rank_interventions(bundle, "bundle-1", None)
    assert exc.value.code == "NO_CANDIDATES"
