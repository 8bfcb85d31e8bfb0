"""
Shared wiring for stage handlers: injected collaborators plus the lineage
helpers that recompute each upstream artifact's expected inputs hash.

A stage only reads upstream rows whose hash matches what the current inputs
would produce. No row at all is ``*_MISSING``; rows that exist but none match
is ``*_STALE``. Both raise PreconditionFailed before any side effect.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from apps.worker.lib.audit import AuditRecord, AuditSink, DbAuditSink
from apps.worker.lib.notifications import InAppTransport, NotificationTransport
from apps.worker.lib.prompt_registry import DEFAULT_PROMPT_REGISTRY, PromptRegistry
from apps.worker.lib.retry_policy import RetryPolicy
from apps.worker.lib.rule_registry import DEFAULT_RULE_REGISTRY, RuleRegistry
from apps.worker.lib.safety_evaluator import SafetyEvaluator, build_default_evaluator
from apps.worker.pipeline_persistence import ArtifactStore
from packages.db.models import Assessment, Base, ProcessingJob
from packages.shared.config import PipelineSettings, load_settings
from packages.shared.errors import PreconditionFailed
from packages.shared.utils.hashing import compute_inputs_hash

logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass
class PipelineDeps:
    store: ArtifactStore = field(default_factory=ArtifactStore)
    settings: PipelineSettings = field(default_factory=load_settings)
    audit: Optional[AuditSink] = None
    prompts: PromptRegistry = DEFAULT_PROMPT_REGISTRY
    rules: RuleRegistry = DEFAULT_RULE_REGISTRY
    evaluator: Optional[SafetyEvaluator] = _UNSET
    renderer: Any = None
    transport: Optional[NotificationTransport] = None
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.audit is None:
            self.audit = DbAuditSink(self.store)
        if self.evaluator is _UNSET:
            self.evaluator = build_default_evaluator(self.settings)
        if self.renderer is None:
            from apps.worker.steps.export_render.report_pdf import ReportlabRenderer

            self.renderer = ReportlabRenderer()
        if self.transport is None:
            self.transport = InAppTransport()

    def safety_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.settings.safety_max_attempts, initial_backoff=0.5, sleep=self.sleep)

    def pdf_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.settings.pdf_max_attempts, initial_backoff=0.5, sleep=self.sleep)

    def delivery_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.delivery_max_attempts,
            initial_backoff=self.settings.delivery_backoff_seconds,
            max_backoff=8.0,
            sleep=self.sleep,
        )

    def record_audit(self, job_id: str, event_key: str, event_type: str, **payload: Any) -> bool:
        return self.audit.record(AuditRecord(job_id=job_id, event_key=event_key, event_type=event_type, payload=payload))


def load_job(store: ArtifactStore, job_id: str) -> tuple[ProcessingJob, Assessment]:
    job = store.get_job(job_id)
    if job is None:
        raise PreconditionFailed(f"Job {job_id} not found", code="JOB_NOT_FOUND")
    assessment = store.find(Assessment, id=job.assessment_id)
    if assessment is None:
        raise PreconditionFailed(f"Assessment for job {job_id} not found", code="ASSESSMENT_MISSING")
    return job, assessment


def require_current(store: ArtifactStore, model: type[Base], label: str, job_id: str, **key: Any):
    """Return the upstream row matching *key*, or raise ``<label>_MISSING`` / ``<label>_STALE``."""
    row = store.find(model, job_id=job_id, **key)
    if row is not None:
        return row
    if store.count(model, job_id=job_id) == 0:
        raise PreconditionFailed(f"No {model.__tablename__} for job {job_id}", code=f"{label}_MISSING")
    raise PreconditionFailed(
        f"{model.__tablename__} for job {job_id} does not match current inputs", code=f"{label}_STALE"
    )


# ── inputs hashes ─────────────────────────────────────────────────────────


def risk_inputs_hash(answers: dict, algorithm_version: str) -> str:
    return compute_inputs_hash("risk", algorithm_version, answers or {})


def ranking_inputs_hash(
    risk_bundle_id: str,
    risk_inputs: str,
    algorithm_version: str,
    registry_digest: str,
    program_tier: Optional[str],
    top_n: int,
) -> str:
    return compute_inputs_hash(
        "ranking", risk_bundle_id, risk_inputs, algorithm_version, registry_digest, program_tier, top_n
    )


def section_inputs_hash(
    section_key: str,
    risk_inputs: str,
    ranking_inputs: Optional[str],
    prompt_address: str,
) -> str:
    return compute_inputs_hash("section", section_key, risk_inputs, ranking_inputs, prompt_address)


def sections_hash(sections: Iterable[Any]) -> str:
    """Digest of a section set; order-independent."""
    return compute_inputs_hash("sections", sorted((s.section_key, s.inputs_hash) for s in sections))


def evaluation_key_hash(sections_digest: str, prompt_version: str, model_config: dict[str, Any]) -> str:
    return compute_inputs_hash("safety", sections_digest, prompt_version, model_config)


def pdf_inputs_hash(sections_digest: str, renderer_version: str) -> str:
    return compute_inputs_hash("pdf", sections_digest, renderer_version)
