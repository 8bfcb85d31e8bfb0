"""
Step 01 - Risk bundle.
Score assessment answers with a versioned scoring config and persist one
RiskBundle per (job, inputs hash).
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from apps.worker.lib.scoring_rules import classify_level, evaluate_rule, get_scoring_config
from apps.worker.pipeline_context import PipelineDeps, load_job, require_current, risk_inputs_hash
from apps.worker.pipeline_persistence import ArtifactStore
from packages.db.models import Assessment, ProcessingJob, RiskBundle
from packages.shared.models import RiskBundlePayload, RiskFactor, RiskStageResult
from packages.shared.utils.hashing import compute_inputs_hash

logger = logging.getLogger(__name__)


def calculate_risk_bundle(
    job_id: str,
    answers: dict[str, Any],
    algorithm_version: str,
    program_tier: Optional[str] = None,
) -> RiskBundlePayload:
    """Pure scoring; identical arguments always produce an identical payload."""
    config = get_scoring_config(algorithm_version)
    factors: list[RiskFactor] = []
    factor_scores: dict[str, float] = {}
    for factor in config.factors:
        score = round(evaluate_rule(factor.rule, answers), 2)
        factor_scores[factor.key] = score
        factors.append(RiskFactor(
            key=factor.key,
            label=factor.label,
            score=score,
            weight=config.factor_weight(factor.key),
            risk_level=classify_level(score, config),
        ))

    overall = round(max(0.0, min(100.0, evaluate_rule(config.overall, factor_scores))), 2)
    return RiskBundlePayload(
        algorithm_version=config.algorithm_version,
        job_id=job_id,
        program_tier=program_tier,
        factors=factors,
        overall_score=overall,
        risk_level=classify_level(overall, config),
        answers_hash=compute_inputs_hash(answers),
    )


def current_risk_bundle(store: ArtifactStore, job: ProcessingJob, assessment: Assessment) -> RiskBundle:
    expected = risk_inputs_hash(assessment.answers_json or {}, job.algorithm_version)
    return require_current(store, RiskBundle, "RISK_BUNDLE", job.id, inputs_hash=expected)


def process_risk_stage(job_id: str, deps: Optional[PipelineDeps] = None) -> RiskStageResult:
    deps = deps or PipelineDeps()
    job, assessment = load_job(deps.store, job_id)
    answers = assessment.answers_json or {}
    inputs_hash = risk_inputs_hash(answers, job.algorithm_version)

    existing = deps.store.find(RiskBundle, job_id=job_id, inputs_hash=inputs_hash)
    if existing is not None:
        logger.info(f"[{job_id}] Risk bundle {existing.id} already exists for inputs")
        return RiskStageResult(bundle_id=existing.id, is_new_bundle=False, inputs_hash=inputs_hash)

    payload = calculate_risk_bundle(job_id, answers, job.algorithm_version, job.program_tier)
    row, is_new = deps.store.insert_or_get(
        RiskBundle,
        {"job_id": job_id, "inputs_hash": inputs_hash},
        {"algorithm_version": payload.algorithm_version, "payload_json": payload.model_dump(mode="json")},
    )
    if is_new:
        logger.info(f"[{job_id}] Risk bundle {row.id} created (level={payload.risk_level.value})")
        deps.record_audit(
            job_id,
            f"risk_bundle.created:{row.id}",
            "risk_bundle.created",
            bundle_id=row.id,
            algorithm_version=payload.algorithm_version,
            inputs_hash=inputs_hash,
        )
    return RiskStageResult(bundle_id=row.id, is_new_bundle=is_new, inputs_hash=inputs_hash)
