"""
API route: Processing pipeline
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from apps.api.authz import RequestIdentity, get_request_identity
from apps.worker.jobs import create_processing_job, list_jobs_requiring_review, record_review_decision, retry_job
from apps.worker.pipeline import PipelineOrchestrator
from apps.worker.pipeline_context import PipelineDeps
from apps.worker.steps.step03_content import process_results_stage
from apps.worker.steps.step07_delivery import record_delivery_callback
from packages.db.database import get_db
from packages.db.models import (
    MedicalValidationResult,
    NotificationRecord,
    PdfArtifact,
    PriorityRanking,
    ProcessingJob,
    ReportSection,
    RiskBundle,
    SafetyCheckResult,
)
from packages.shared.artifacts import (
    ARTIFACT_MEDICAL_VALIDATION,
    ARTIFACT_NOTIFICATION,
    ARTIFACT_PDF,
    ARTIFACT_PRIORITY_RANKING,
    ARTIFACT_REPORT_SECTION,
    ARTIFACT_RISK_BUNDLE,
    ARTIFACT_SAFETY_CHECK,
    is_valid_artifact_type,
    missing_required_types,
)
from packages.shared.errors import GuardrailViolation, PipelineError, PreconditionFailed
from packages.shared.models import StageOutcome
from packages.shared.models.enums import Stage
from packages.shared.storage import DATA_DIR
from packages.shared.utils.redaction import redact_error_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/processing", tags=["processing"])

_NOT_FOUND_CODES = {"JOB_NOT_FOUND", "ASSESSMENT_MISSING", "NOTIFICATION_NOT_FOUND"}

_ARTIFACT_MODELS = {
    ARTIFACT_RISK_BUNDLE: RiskBundle,
    ARTIFACT_PRIORITY_RANKING: PriorityRanking,
    ARTIFACT_REPORT_SECTION: ReportSection,
    ARTIFACT_MEDICAL_VALIDATION: MedicalValidationResult,
    ARTIFACT_SAFETY_CHECK: SafetyCheckResult,
    ARTIFACT_PDF: PdfArtifact,
    ARTIFACT_NOTIFICATION: NotificationRecord,
}


def get_pipeline_deps() -> PipelineDeps:
    return PipelineDeps()


class CreateJobRequest(BaseModel):
    assessment_id: str
    correlation_id: Optional[str] = None
    program_tier: Optional[str] = None
    algorithm_version: Optional[str] = None


class JobResponse(BaseModel):
    id: str
    assessment_id: str
    status: str
    stage: str
    algorithm_version: str
    program_tier: Optional[str]
    attempt: int
    review_required: bool
    review_status: str
    delivery_status: str
    error_code: Optional[str]
    error_message: Optional[str]
    is_new: Optional[bool] = None


class ResultsRequest(BaseModel):
    algorithm_version: Optional[str] = None


class DeliveryRequest(BaseModel):
    channel: Optional[str] = None


class ReviewRequest(BaseModel):
    approved: bool
    reviewer_role: Optional[str] = None
    note_code: Optional[str] = None


class CallbackRequest(BaseModel):
    status: str


class NotificationResponse(BaseModel):
    id: str
    job_id: str
    notification_type: str
    channel: str
    status: str
    attempts: int
    last_error_code: Optional[str]


class ArtifactSummary(BaseModel):
    artifact_type: str
    count: int
    ids: list[str]


class ArtifactsResponse(BaseModel):
    job_id: str
    artifacts: list[ArtifactSummary]
    missing_for_delivery: list[str]


def _job_response(job: ProcessingJob, is_new: Optional[bool] = None) -> JobResponse:
    return JobResponse(
        id=job.id,
        assessment_id=job.assessment_id,
        status=job.status,
        stage=job.stage,
        algorithm_version=job.algorithm_version,
        program_tier=job.program_tier,
        attempt=job.attempt or 1,
        review_required=bool(job.review_required),
        review_status=job.review_status,
        delivery_status=job.delivery_status,
        error_code=job.error_code,
        error_message=job.error_message,
        is_new=is_new,
    )


def _error_detail(exc: PipelineError) -> dict:
    return {"code": exc.code, "message": redact_error_message(str(exc)), "details": exc.details}


def _run_stage(job_id: str, stage: str, fn: Callable[[], Any]) -> Any:
    """Call a job or notification operation and map pipeline errors onto HTTP."""
    try:
        return fn()
    except PreconditionFailed as exc:
        status = 404 if exc.code in _NOT_FOUND_CODES else 409
        raise HTTPException(status_code=status, detail=_error_detail(exc))
    except GuardrailViolation as exc:
        raise HTTPException(status_code=422, detail=_error_detail(exc))
    except PipelineError as exc:
        logger.warning(
            f"[{job_id}] {stage} failed: {exc.code}",
            extra={"job_id": job_id, "stage": stage, "error_code": exc.code},
        )
        outcome = StageOutcome(
            job_id=job_id,
            success=False,
            error_code=exc.code,
            error_message=redact_error_message(str(exc)),
            data=exc.details,
        )
        return JSONResponse(status_code=200, content=outcome.model_dump(mode="json"))


def _invoke_stage(
    deps: PipelineDeps, job_id: str, stage: Stage, handler: Optional[Callable[..., Any]] = None, **kwargs: Any
):
    """
    Run one stage through the orchestrator so failures are persisted on the job.

    Preconditions map to 404/409 and guardrail rejections to 422; any other
    failure comes back as a 200 StageOutcome body.
    """
    outcome = PipelineOrchestrator(deps).invoke(job_id, stage, handler, **kwargs)
    if outcome.error_type is None:
        return outcome.data
    detail = {"code": outcome.error_code, "message": outcome.error_message, "details": outcome.data}
    if outcome.error_type == PreconditionFailed.__name__:
        raise HTTPException(status_code=404 if outcome.error_code in _NOT_FOUND_CODES else 409, detail=detail)
    if outcome.error_type == GuardrailViolation.__name__:
        raise HTTPException(status_code=422, detail=detail)
    return JSONResponse(status_code=200, content=outcome.model_dump(mode="json"))


# ── jobs ──────────────────────────────────────────────────────────────────


@router.post("/jobs", response_model=JobResponse, status_code=201)
def create_job(
    req: CreateJobRequest,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    """Create the processing job for a completed assessment (idempotent per correlation id)."""
    job, is_new = _run_stage(
        "-",
        "create",
        lambda: create_processing_job(
            req.assessment_id,
            correlation_id=req.correlation_id,
            program_tier=req.program_tier,
            algorithm_version=req.algorithm_version,
            deps=deps,
        ),
    )
    return _job_response(job, is_new=is_new)


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    job = db.query(ProcessingJob).filter_by(id=job_id).first()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.post("/jobs/{job_id}/retry", response_model=JobResponse)
def retry(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _job_response(_run_stage(job_id, "retry", lambda: retry_job(job_id, deps=deps)))


# ── stages ────────────────────────────────────────────────────────────────


@router.post("/jobs/{job_id}/risk")
def risk_stage(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _invoke_stage(deps, job_id, Stage.RISK)


@router.post("/jobs/{job_id}/ranking")
def ranking_stage(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _invoke_stage(deps, job_id, Stage.RANKING)


@router.post("/jobs/{job_id}/content")
def content_stage(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _invoke_stage(deps, job_id, Stage.CONTENT)


@router.post("/jobs/{job_id}/results")
def results_stage(
    job_id: str,
    req: ResultsRequest = ResultsRequest(),
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _invoke_stage(
        deps, job_id, Stage.CONTENT, process_results_stage, algorithm_version=req.algorithm_version
    )


@router.post("/jobs/{job_id}/validation")
def validation_stage(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _invoke_stage(deps, job_id, Stage.VALIDATION)


@router.post("/jobs/{job_id}/safety")
def safety_stage(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _invoke_stage(deps, job_id, Stage.SAFETY_CHECK)


@router.post("/jobs/{job_id}/pdf")
def pdf_stage(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _invoke_stage(deps, job_id, Stage.PDF)


@router.post("/jobs/{job_id}/delivery")
def delivery_stage(
    job_id: str,
    req: DeliveryRequest = DeliveryRequest(),
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    return _invoke_stage(deps, job_id, Stage.DELIVERY, channel=req.channel)


@router.post("/jobs/{job_id}/advance", response_model=StageOutcome)
def advance(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    outcome = PipelineOrchestrator(deps).advance(job_id)
    if outcome.error_code == "JOB_NOT_FOUND":
        raise HTTPException(status_code=404, detail="Job not found")
    return outcome


@router.post("/jobs/{job_id}/run", response_model=list[StageOutcome])
def run(
    job_id: str,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    outcomes = PipelineOrchestrator(deps).run(job_id)
    if outcomes and outcomes[0].error_code == "JOB_NOT_FOUND":
        raise HTTPException(status_code=404, detail="Job not found")
    return outcomes


# ── review ────────────────────────────────────────────────────────────────


@router.post("/jobs/{job_id}/review", response_model=JobResponse)
def review(
    job_id: str,
    req: ReviewRequest,
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    role = identity.role if identity else (req.reviewer_role or "")
    try:
        job = record_review_decision(
            job_id,
            approved=req.approved,
            reviewer_role=role,
            reviewer_id=identity.user_id if identity else None,
            note_code=req.note_code,
            deps=deps,
        )
    except PreconditionFailed as exc:
        if exc.code == "REVIEWER_ROLE_NOT_ALLOWED":
            raise HTTPException(status_code=403, detail=_error_detail(exc))
        status = 404 if exc.code in _NOT_FOUND_CODES else 409
        raise HTTPException(status_code=status, detail=_error_detail(exc))
    return _job_response(job)


@router.get("/review-queue", response_model=list[JobResponse])
def review_queue(
    deps: PipelineDeps = Depends(get_pipeline_deps),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    """Jobs a clinician or admin must look at: pending reviews and failures."""
    return [_job_response(job) for job in list_jobs_requiring_review(deps.store)]


# ── notifications & artifacts ─────────────────────────────────────────────


@router.post("/notifications/{notification_id}/callback", response_model=NotificationResponse)
def notification_callback(
    notification_id: str,
    req: CallbackRequest,
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    """Status callback from the notification transport."""
    row = _run_stage("-", "delivery", lambda: record_delivery_callback(notification_id, req.status, deps=deps))
    return NotificationResponse(
        id=row.id,
        job_id=row.job_id,
        notification_type=row.notification_type,
        channel=row.channel,
        status=row.status,
        attempts=row.attempts or 0,
        last_error_code=row.last_error_code,
    )


@router.get("/jobs/{job_id}/artifacts", response_model=ArtifactsResponse)
def list_artifacts(
    job_id: str,
    artifact_type: Optional[str] = None,
    db: Session = Depends(get_db),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    """Artifact ids per type; ``missing_for_delivery`` lists the kinds not produced yet."""
    if artifact_type is not None and not is_valid_artifact_type(artifact_type):
        raise HTTPException(status_code=400, detail="Invalid artifact type")
    if not db.query(ProcessingJob).filter_by(id=job_id).first():
        raise HTTPException(status_code=404, detail="Job not found")

    summaries = []
    for atype, model in _ARTIFACT_MODELS.items():
        ids = [row.id for row in db.query(model).filter_by(job_id=job_id).order_by(model.created_at.asc()).all()]
        summaries.append(ArtifactSummary(artifact_type=atype, count=len(ids), ids=ids))

    present = [s.artifact_type for s in summaries if s.count]
    if artifact_type is not None:
        summaries = [s for s in summaries if s.artifact_type == artifact_type]
    return ArtifactsResponse(job_id=job_id, artifacts=summaries, missing_for_delivery=missing_required_types(present))


@router.get("/jobs/{job_id}/pdf")
def download_pdf(
    job_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    """Download the most recent rendered report."""
    pdf = db.query(PdfArtifact).filter_by(job_id=job_id).order_by(PdfArtifact.created_at.desc()).first()
    if not pdf:
        raise HTTPException(status_code=404, detail="Report not found")

    data_dir = DATA_DIR.resolve()
    file_path = Path(pdf.storage_uri).resolve()
    try:
        file_path.relative_to(data_dir)
    except ValueError:
        raise HTTPException(status_code=404, detail="Report not found")
    if not file_path.exists():
        raise HTTPException(status_code=404, detail="Report file missing")

    return FileResponse(path=str(file_path), filename=f"report_{job_id}.pdf", media_type="application/pdf")
