"""
Processing-job lifecycle: creation, failure, retry, review decisions.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import or_

from apps.worker.pipeline_context import PipelineDeps
from apps.worker.pipeline_persistence import ArtifactStore
from packages.db.models import Assessment, ProcessingJob, ReviewRecord
from packages.shared.errors import PreconditionFailed
from packages.shared.models.enums import JobStatus, ReviewStatus, Stage
from packages.shared.utils.redaction import redact_error_message

logger = logging.getLogger(__name__)

DEFAULT_CORRELATION_ID = "default"
REVIEWER_ROLES = {"clinician", "admin"}


def create_processing_job(
    assessment_id: str,
    correlation_id: Optional[str] = None,
    program_tier: Optional[str] = None,
    algorithm_version: Optional[str] = None,
    deps: Optional[PipelineDeps] = None,
) -> tuple[ProcessingJob, bool]:
    """Create the job for an assessment, or return the existing one for the same correlation id."""
    deps = deps or PipelineDeps()
    store = deps.store
    if store.find(Assessment, id=assessment_id) is None:
        raise PreconditionFailed(f"Assessment {assessment_id} not found", code="ASSESSMENT_MISSING")

    correlation_id = correlation_id or DEFAULT_CORRELATION_ID
    job, is_new = store.insert_or_get(
        ProcessingJob,
        {"assessment_id": assessment_id, "correlation_id": correlation_id},
        {
            "status": JobStatus.PENDING.value,
            "stage": Stage.RISK.value,
            "algorithm_version": algorithm_version or deps.settings.risk_algorithm_version,
            "program_tier": program_tier,
            "attempt": 1,
            "max_attempts": 3,
            "review_required": False,
            "review_status": ReviewStatus.NOT_REQUIRED.value,
        },
    )
    if is_new:
        logger.info(f"[{job.id}] Created processing job")
        deps.record_audit(job.id, "job.created", "job.created", algorithm_version=job.algorithm_version)
    return job, is_new


def mark_job_failed(store: ArtifactStore, job_id: str, error_code: str, message: str) -> None:
    store.update_job(
        job_id,
        status=JobStatus.FAILED.value,
        error_code=error_code,
        error_message=redact_error_message(message),
    )


def retry_job(job_id: str, deps: Optional[PipelineDeps] = None) -> ProcessingJob:
    """Move a failed job back to in_progress at the stage where it failed."""
    deps = deps or PipelineDeps()
    store = deps.store
    job = store.get_job(job_id)
    if job is None:
        raise PreconditionFailed(f"Job {job_id} not found", code="JOB_NOT_FOUND")
    if job.status != JobStatus.FAILED.value:
        raise PreconditionFailed(f"Job {job_id} is not failed", code="JOB_NOT_FAILED")
    if (job.attempt or 1) >= (job.max_attempts or 3):
        raise PreconditionFailed(f"Job {job_id} exhausted {job.max_attempts} attempts", code="MAX_ATTEMPTS_EXCEEDED")

    claimed = store.update_job(
        job_id,
        expected={"status": JobStatus.FAILED.value, "attempt": job.attempt},
        status=JobStatus.IN_PROGRESS.value,
        attempt=job.attempt + 1,
        error_code=None,
        error_message=None,
    )
    if claimed:
        logger.info(f"[{job_id}] Retrying at stage {job.stage} (attempt {job.attempt + 1})")
        deps.record_audit(job_id, f"job.retried:{job.attempt + 1}", "job.retried", stage=job.stage)
    return store.get_job(job_id)


def require_review(store: ArtifactStore, job_id: str, reset: bool) -> None:
    """
    Mark the job as needing human review.

    ``reset`` reopens an already-decided review; used when a new fail-closed
    artifact was written, not when an existing one is re-read.
    """
    if reset:
        store.update_job(job_id, review_required=True, review_status=ReviewStatus.PENDING.value)
        return
    store.update_job(
        job_id,
        expected={"review_status": ReviewStatus.NOT_REQUIRED.value},
        review_required=True,
        review_status=ReviewStatus.PENDING.value,
    )


def record_review_decision(
    job_id: str,
    approved: bool,
    reviewer_role: str,
    reviewer_id: Optional[str] = None,
    note_code: Optional[str] = None,
    deps: Optional[PipelineDeps] = None,
) -> ProcessingJob:
    deps = deps or PipelineDeps()
    store = deps.store
    if reviewer_role not in REVIEWER_ROLES:
        raise PreconditionFailed(f"Role {reviewer_role} may not review", code="REVIEWER_ROLE_NOT_ALLOWED")
    job = store.get_job(job_id)
    if job is None:
        raise PreconditionFailed(f"Job {job_id} not found", code="JOB_NOT_FOUND")

    decision = ReviewStatus.APPROVED if approved else ReviewStatus.REJECTED
    review = store.add(
        ReviewRecord,
        job_id=job_id,
        approved=approved,
        reviewer_role=reviewer_role,
        reviewer_id=reviewer_id,
        note_code=note_code,
    )
    store.update_job(job_id, review_status=decision.value)
    deps.record_audit(job_id, f"review.decided:{review.id}", "review.decided", decision=decision.value, role=reviewer_role)
    logger.info(f"[{job_id}] Review {decision.value} by {reviewer_role}")
    return store.get_job(job_id)


def list_jobs_requiring_review(store: Optional[ArtifactStore] = None) -> list[ProcessingJob]:
    """Jobs awaiting a review decision, plus failed jobs; never silently dropped."""
    store = store or ArtifactStore()
    with store.session() as session:
        return (
            session.query(ProcessingJob)
            .filter(
                or_(
                    (ProcessingJob.review_required.is_(True)) & (ProcessingJob.review_status == ReviewStatus.PENDING.value),
                    ProcessingJob.status == JobStatus.FAILED.value,
                )
            )
            .order_by(ProcessingJob.created_at.asc())
            .all()
        )
