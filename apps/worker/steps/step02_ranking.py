"""
Step 02 - Priority ranking.
Rank registry interventions by impact x feasibility for the current risk bundle.
"""
from __future__ import annotations

import logging
import math
from typing import Optional

from apps.worker.lib.intervention_registry import (
    INTERVENTION_REGISTRY_VERSION,
    INTERVENTION_TOPICS,
    InterventionTopicDefinition,
    registry_hash,
)
from apps.worker.pipeline_context import PipelineDeps, load_job, ranking_inputs_hash, require_current
from apps.worker.pipeline_persistence import ArtifactStore
from apps.worker.steps.step01_risk import current_risk_bundle
from packages.db.models import PriorityRanking, ProcessingJob, RiskBundle
from packages.shared.errors import RankingError
from packages.shared.models import (
    InterventionTopic,
    RankedIntervention,
    RankingPayload,
    RankingStageResult,
    RiskBundlePayload,
    ScoreComponent,
)
from packages.shared.models.enums import RiskLevel

logger = logging.getLogger(__name__)

RANKING_ALGORITHM_VERSION = "v1.0.0"
MAX_TOP_N = 10

IMPACT_MULTIPLIERS = {
    RiskLevel.CRITICAL: 1.3,
    RiskLevel.HIGH: 1.15,
    RiskLevel.MODERATE: 1.0,
    RiskLevel.LOW: 0.85,
}

TIER_FEASIBILITY_BOOST = {
    "tier-1-essential": 10,
    "tier-2-5-enhanced": 5,
    "tier-2-comprehensive": 0,
}

TIER_SIGNALS = {
    "tier-1-essential": "tier_1_recommended",
    "tier-2-5-enhanced": "tier_2_5_recommended",
    "tier-2-comprehensive": "tier_2_recommended",
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp_score(value: float) -> int:
    return max(0, min(100, _round_half_up(value)))


def _impact(topic: InterventionTopicDefinition, bundle: RiskBundlePayload) -> ScoreComponent:
    signals: list[str] = []
    score = float(topic.baseline_impact)
    if bundle.risk_level == RiskLevel.CRITICAL:
        signals += ["critical_risk_level", "high_impact_potential"]
    elif bundle.risk_level == RiskLevel.HIGH:
        signals.append("high_impact_potential")

    matching = [f for f in bundle.factors if f.key in topic.target_risk_factors]
    if len(matching) > 1:
        signals.append("multiple_risk_factors")
        score *= 1.1
    if any(f.key == "stress" and f.score >= 50 for f in matching):
        signals.append("high_stress_score")

    score *= IMPACT_MULTIPLIERS.get(bundle.risk_level, 1.0)
    return ScoreComponent(score=_clamp_score(score), signals=signals)


def _feasibility(topic: InterventionTopicDefinition, program_tier: Optional[str]) -> ScoreComponent:
    signals: list[str] = []
    score = float(topic.baseline_feasibility)
    if program_tier:
        score += TIER_FEASIBILITY_BOOST.get(program_tier, 0)
        if program_tier in topic.compatible_tiers and program_tier in TIER_SIGNALS:
            signals.append(TIER_SIGNALS[program_tier])

    if topic.baseline_feasibility >= 80:
        signals += ["easy_to_implement", "requires_minimal_time", "low_barrier"]
    elif topic.baseline_feasibility < 60:
        signals += ["high_barrier", "requires_support"]
    return ScoreComponent(score=_clamp_score(score), signals=signals)


def rank_interventions(
    bundle: RiskBundlePayload,
    risk_bundle_id: str,
    program_tier: Optional[str] = None,
    top_n: int = 5,
) -> RankingPayload:
    """Pure ranking over the intervention registry. Ties break on topic id."""
    if not 1 <= top_n <= MAX_TOP_N:
        raise RankingError(f"top_n must be between 1 and {MAX_TOP_N}", code="INVALID_TOP_N")

    factor_keys = {f.key for f in bundle.factors}
    candidates = [
        topic
        for topic in INTERVENTION_TOPICS.values()
        if factor_keys.intersection(topic.target_risk_factors)
        and (not program_tier or program_tier in topic.compatible_tiers)
    ]
    if not candidates:
        raise RankingError("No suitable interventions for risk factors", code="NO_CANDIDATES")

    scored = []
    for topic in candidates:
        impact = _impact(topic, bundle)
        feasibility = _feasibility(topic, program_tier)
        priority = _round_half_up(impact.score * feasibility.score / 100)
        scored.append((priority, topic, impact, feasibility))
    scored.sort(key=lambda item: (-item[0], item[1].topic_id))

    ranked = [
        RankedIntervention(
            topic=InterventionTopic(
                topic_id=topic.topic_id,
                topic_label=topic.topic_label,
                pillar_key=topic.pillar_key,
                content_key=topic.content_key,
            ),
            impact=impact,
            feasibility=feasibility,
            priority_score=priority,
            rank=idx,
            tier_compatibility=list(topic.compatible_tiers),
        )
        for idx, (priority, topic, impact, feasibility) in enumerate(scored, start=1)
    ]
    return RankingPayload(
        algorithm_version=RANKING_ALGORITHM_VERSION,
        registry_version=INTERVENTION_REGISTRY_VERSION,
        registry_hash=registry_hash(),
        risk_bundle_id=risk_bundle_id,
        job_id=bundle.job_id,
        program_tier=program_tier,
        ranked_interventions=ranked,
        top_interventions=ranked[:top_n],
    )


def _ranking_hash(job: ProcessingJob, bundle: RiskBundle, top_n: int) -> str:
    return ranking_inputs_hash(
        bundle.id, bundle.inputs_hash, RANKING_ALGORITHM_VERSION, registry_hash(), job.program_tier, top_n
    )


def current_ranking(store: ArtifactStore, job: ProcessingJob, bundle: RiskBundle, top_n: int) -> PriorityRanking:
    return require_current(
        store, PriorityRanking, "RANKING", job.id, inputs_hash=_ranking_hash(job, bundle, top_n)
    )


def process_ranking_stage(job_id: str, deps: Optional[PipelineDeps] = None) -> RankingStageResult:
    deps = deps or PipelineDeps()
    job, assessment = load_job(deps.store, job_id)
    bundle = current_risk_bundle(deps.store, job, assessment)
    top_n = deps.settings.ranking_top_n
    inputs_hash = _ranking_hash(job, bundle, top_n)

    existing = deps.store.find(PriorityRanking, job_id=job_id, inputs_hash=inputs_hash)
    if existing is not None:
        logger.info(f"[{job_id}] Ranking {existing.id} already exists for inputs")
        return RankingStageResult(ranking_id=existing.id, is_new=False, inputs_hash=inputs_hash)

    payload = rank_interventions(
        RiskBundlePayload.model_validate(bundle.payload_json), bundle.id, job.program_tier, top_n
    )
    row, is_new = deps.store.insert_or_get(
        PriorityRanking,
        {"job_id": job_id, "inputs_hash": inputs_hash},
        {
            "risk_bundle_id": bundle.id,
            "algorithm_version": payload.algorithm_version,
            "registry_version": payload.registry_version,
            "payload_json": payload.model_dump(mode="json"),
        },
    )
    if is_new:
        logger.info(f"[{job_id}] Ranking {row.id} created ({len(payload.ranked_interventions)} candidates)")
        deps.record_audit(
            job_id,
            f"ranking.created:{row.id}",
            "ranking.created",
            ranking_id=row.id,
            risk_bundle_id=bundle.id,
            inputs_hash=inputs_hash,
        )
    return RankingStageResult(ranking_id=row.id, is_new=is_new, inputs_hash=inputs_hash)
