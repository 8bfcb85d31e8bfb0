"""
Pipeline orchestrator - drives one job through the stages in order.

``ProcessingJob.stage`` is the only record of pipeline position and only this
module moves it. Stage handlers compute and persist idempotently; the
orchestrator turns whatever they raise into a StageOutcome.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from apps.worker.jobs import mark_job_failed
from apps.worker.pipeline_context import PipelineDeps
from apps.worker.steps.step01_risk import process_risk_stage
from apps.worker.steps.step02_ranking import process_ranking_stage
from apps.worker.steps.step03_content import process_content_stage
from apps.worker.steps.step04_validation import process_validation_stage
from apps.worker.steps.step05_safety import process_safety_stage
from apps.worker.steps.step06_pdf import process_pdf_stage
from apps.worker.steps.step07_delivery import process_delivery_stage
from packages.db.models import utcnow
from packages.shared.errors import PipelineError, PreconditionFailed
from packages.shared.models import StageOutcome
from packages.shared.models.enums import STAGE_ORDER, DeliveryStatus, JobStatus, Stage, next_stage
from packages.shared.utils.redaction import redact_error_message

logger = logging.getLogger(__name__)

StageHandler = Callable[..., Any]


def _summarize(result: Any) -> tuple[Optional[str], bool]:
    """(artifact id, is_new) from any stage result model."""
    for attr in ("bundle_id", "ranking_id", "result_id", "validation_id", "safety_id", "pdf_id", "notification_id"):
        if hasattr(result, attr):
            is_new = getattr(result, "is_new_bundle", None)
            if is_new is None:
                is_new = result.is_new
            return getattr(result, attr), bool(is_new)
    # content: the section set is identified by its digest
    return result.sections_hash, bool(result.generated)


class PipelineOrchestrator:
    def __init__(self, deps: Optional[PipelineDeps] = None):
        self.deps = deps or PipelineDeps()
        self.handlers: dict[Stage, StageHandler] = {
            Stage.RISK: process_risk_stage,
            Stage.RANKING: process_ranking_stage,
            Stage.CONTENT: process_content_stage,
            Stage.VALIDATION: process_validation_stage,
            Stage.SAFETY_CHECK: process_safety_stage,
            Stage.PDF: process_pdf_stage,
            Stage.DELIVERY: process_delivery_stage,
        }

    # ── single step ──────────────────────────────────────────────────────

    def advance(self, job_id: str) -> StageOutcome:
        store = self.deps.store
        job = store.get_job(job_id)
        if job is None:
            return StageOutcome(job_id=job_id, success=False, error_code="JOB_NOT_FOUND")
        if job.status == JobStatus.FAILED.value:
            return StageOutcome(
                job_id=job_id,
                stage=Stage(job.stage),
                success=False,
                job_status=JobStatus.FAILED,
                error_code="JOB_FAILED",
                error_message=job.error_code,
            )
        if job.status == JobStatus.COMPLETED.value or job.stage == Stage.COMPLETED.value:
            return self._invoke(job_id, Stage.DELIVERY)

        if job.status == JobStatus.PENDING.value:
            store.update_job(
                job_id,
                expected={"status": JobStatus.PENDING.value},
                status=JobStatus.IN_PROGRESS.value,
                started_at=utcnow(),
            )

        stage = Stage(job.stage)
        outcome = self._invoke(job_id, stage)
        if not outcome.success:
            return outcome

        nxt = next_stage(stage)
        values: dict[str, Any] = {"stage": nxt.value}
        if nxt == Stage.COMPLETED:
            values.update(status=JobStatus.COMPLETED.value, completed_at=utcnow())
        moved = store.update_job(
            job_id, expected={"stage": stage.value, "status": JobStatus.IN_PROGRESS.value}, **values
        )
        if moved:
            logger.info(f"[{job_id}] {stage.value} -> {nxt.value}")
            self.deps.record_audit(job_id, f"stage.completed:{stage.value}", "stage.completed", artifact_id=outcome.artifact_id)

        current = store.get_job(job_id)
        outcome.next_stage = Stage(current.stage)
        outcome.job_status = JobStatus(current.status)
        outcome.review_required = bool(current.review_required)
        return outcome

    def invoke(
        self, job_id: str, stage: Stage, handler: Optional[StageHandler] = None, **kwargs: Any
    ) -> StageOutcome:
        """
        Run a single stage handler without moving the job's stage.

        Used by the per-stage API endpoints; failures are persisted exactly as
        in advance(). *handler* overrides the registered one (results alias).
        """
        return self._invoke(job_id, stage, handler, **kwargs)

    def _invoke(
        self, job_id: str, stage: Stage, handler: Optional[StageHandler] = None, **kwargs: Any
    ) -> StageOutcome:
        """Run one handler; every exception becomes a failed outcome."""
        handler = handler or self.handlers[stage]
        fail_job = stage != Stage.DELIVERY
        try:
            result = handler(job_id, deps=self.deps, **kwargs)
        except PreconditionFailed as exc:
            # no side effects: the job stays where it is
            return self._failure(job_id, stage, exc, details=exc.details, fail_job=False)
        except PipelineError as exc:
            return self._failure(job_id, stage, exc, details=exc.details, fail_job=fail_job)
        except Exception as exc:
            logger.exception(f"[{job_id}] Unexpected error in stage {stage.value}")
            return self._failure(job_id, stage, exc, fail_job=fail_job)

        artifact_id, is_new = _summarize(result)
        job = self.deps.store.get_job(job_id)
        # exhausted send retries come back as a result, not an exception
        delivery_failed = getattr(result, "delivery_status", None) == DeliveryStatus.FAILED
        return StageOutcome(
            job_id=job_id,
            stage=stage,
            success=not delivery_failed,
            error_code=result.reasons[0] if delivery_failed and result.reasons else None,
            is_new=is_new,
            artifact_id=artifact_id,
            job_status=JobStatus(job.status),
            next_stage=Stage(job.stage),
            review_required=bool(job.review_required),
            data=result.model_dump(mode="json"),
        )

    def _failure(
        self,
        job_id: str,
        stage: Stage,
        exc: Exception,
        details: Optional[dict] = None,
        fail_job: bool = True,
    ) -> StageOutcome:
        error_code = exc.code if isinstance(exc, PipelineError) else "INTERNAL_ERROR"
        message = redact_error_message(str(exc))
        logger.warning(
            f"[{job_id}] Stage {stage.value} failed: {error_code}",
            extra={"job_id": job_id, "stage": stage.value, "error_code": error_code},
        )
        if fail_job and self.deps.store.get_job(job_id) is not None:
            mark_job_failed(self.deps.store, job_id, error_code, message)
            job = self.deps.store.get_job(job_id)
            self.deps.record_audit(
                job_id,
                f"job.failed:{stage.value}:{job.attempt}",
                "job.failed",
                stage=stage.value,
                error_code=error_code,
            )
        job = self.deps.store.get_job(job_id)
        return StageOutcome(
            job_id=job_id,
            stage=stage,
            success=False,
            job_status=JobStatus(job.status) if job else None,
            next_stage=Stage(job.stage) if job else None,
            review_required=bool(job.review_required) if job else False,
            error_code=error_code,
            error_type=type(exc).__name__,
            error_message=message,
            data=details or {},
        )

    # ── multi step ───────────────────────────────────────────────────────

    def run(self, job_id: str, max_steps: int = 10) -> list[StageOutcome]:
        """Advance until delivery has been attempted, the job fails, or a precondition stops it."""
        outcomes: list[StageOutcome] = []
        for _ in range(max_steps):
            outcome = self.advance(job_id)
            outcomes.append(outcome)
            if not outcome.success or outcome.stage == Stage.DELIVERY:
                break
        return outcomes

    def rerun(self, job_id: str) -> list[StageOutcome]:
        """
        Invoke every stage handler in order for a job that already ran.

        Stage position is not touched; with unchanged inputs every outcome
        comes back with is_new=False.
        """
        outcomes = []
        for stage in STAGE_ORDER:
            if stage == Stage.COMPLETED:
                break
            outcomes.append(self._invoke(job_id, stage))
        outcomes.append(self._invoke(job_id, Stage.DELIVERY))
        return outcomes


def run_job(job_id: str, deps: Optional[PipelineDeps] = None) -> list[StageOutcome]:
    """Drive one job as far as it will go."""
    outcomes = PipelineOrchestrator(deps).run(job_id)
    last = outcomes[-1] if outcomes else None
    if last is not None:
        logger.info(
            f"[{job_id}] Run stopped at {last.stage.value if last.stage else '-'}: "
            f"success={last.success} status={last.job_status.value if last.job_status else '-'}"
        )
    return outcomes
