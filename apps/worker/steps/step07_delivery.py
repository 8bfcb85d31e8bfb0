"""
Step 07 - Delivery.
NOT_READY -> READY -> DELIVERED, with FAILED reachable from READY once send
retries are exhausted. A transport that reports failed counts as a failed
send attempt. One report_ready notification per job: the unique
(job_id, notification_type) row is the claim, so concurrent callers converge
on the same record and only the claim winner talks to the transport. A
pending claim that never reached the transport is reclaimed once its lease
lapses.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from apps.worker.lib.notifications import OutgoingNotification, has_consent, notification_content
from apps.worker.pipeline_context import PipelineDeps, load_job
from apps.worker.steps.step03_content import current_sections
from apps.worker.steps.step06_pdf import current_pdf
from packages.db.models import Assessment, NotificationRecord, PdfArtifact, ProcessingJob, utcnow
from packages.shared.errors import (
    ConsentNotVerified,
    PipelineError,
    PreconditionFailed,
    TransientTransportFailure,
)
from packages.shared.models import DeliveryStageResult
from packages.shared.models.enums import (
    NOTIFICATION_STATUS_RANK,
    DeliveryStatus,
    JobStatus,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    ReviewStatus,
    Stage,
)

logger = logging.getLogger(__name__)

_TERMINAL_NOTIFICATION = {NotificationStatus.FAILED.value, NotificationStatus.DELIVERED.value}
_SWEEPABLE = (DeliveryStatus.NOT_READY.value, DeliveryStatus.READY.value, DeliveryStatus.FAILED.value)


def check_delivery_eligibility(
    deps: PipelineDeps, job: ProcessingJob, assessment: Assessment
) -> tuple[list[str], Optional[PdfArtifact]]:
    """Return (blocking reason codes, current PDF). No reasons means the job may go READY."""
    reasons: list[str] = []
    if job.status != JobStatus.COMPLETED.value:
        reasons.append("JOB_NOT_COMPLETED")
    if job.stage != Stage.COMPLETED.value:
        reasons.append("STAGE_NOT_COMPLETED")

    pdf = None
    try:
        _sections, digest = current_sections(deps, job, assessment)
        pdf = current_pdf(deps, job, digest)
    except PreconditionFailed as exc:
        reasons.append(exc.code)

    if job.review_required:
        if job.review_status == ReviewStatus.REJECTED.value:
            reasons.append("REVIEW_REJECTED")
        elif job.review_status != ReviewStatus.APPROVED.value:
            reasons.append("REVIEW_PENDING")

    if (job.delivery_triggers or 0) >= deps.settings.delivery_max_triggers:
        reasons.append("MAX_TRIGGERS_EXCEEDED")
    return reasons, pdf


def _result(row: NotificationRecord, delivery_status: str, is_new: bool, reasons: Optional[list[str]] = None):
    return DeliveryStageResult(
        notification_id=row.id,
        status=NotificationStatus(row.status),
        delivery_status=DeliveryStatus(delivery_status),
        is_new=is_new,
        reasons=reasons or [],
    )


def _reclaim_lapsed(deps: PipelineDeps, row: NotificationRecord) -> bool:
    """Take over a pending claim whose caller never reached the transport."""
    cutoff = utcnow() - timedelta(seconds=deps.settings.delivery_claim_lease_seconds)
    with deps.store.session() as session:
        rows_updated = (
            session.query(NotificationRecord)
            .filter(
                NotificationRecord.id == row.id,
                NotificationRecord.status == NotificationStatus.PENDING.value,
                NotificationRecord.sent_at.is_(None),
                NotificationRecord.updated_at < cutoff,
            )
            .update({"updated_at": utcnow()}, synchronize_session=False)
        )
    return rows_updated == 1


def _claim(
    deps: PipelineDeps, job_id: str, existing: Optional[NotificationRecord], values: dict
) -> tuple[NotificationRecord, bool]:
    """Create the notification row, or reopen a failed one. Returns (row, won)."""
    store = deps.store
    if existing is None:
        return store.insert_or_get(
            NotificationRecord,
            {"job_id": job_id, "notification_type": NotificationType.REPORT_READY.value},
            values,
        )
    won = store.update_row(
        NotificationRecord,
        existing.id,
        expected={"status": NotificationStatus.FAILED.value, "attempts": existing.attempts},
        status=NotificationStatus.PENDING.value,
        last_error_code=None,
        channel=values["channel"],
        pdf_artifact_id=values["pdf_artifact_id"],
        content_json=values["content_json"],
    )
    return store.find(NotificationRecord, id=existing.id), won


def process_delivery_stage(
    job_id: str,
    channel: Optional[str] = None,
    deps: Optional[PipelineDeps] = None,
) -> DeliveryStageResult:
    deps = deps or PipelineDeps()
    store = deps.store
    job, assessment = load_job(store, job_id)
    notification_type = NotificationType.REPORT_READY.value

    existing = store.find(NotificationRecord, job_id=job_id, notification_type=notification_type)
    reclaimed = False
    if existing is not None and existing.status != NotificationStatus.FAILED.value:
        if not _reclaim_lapsed(deps, existing):
            return _result(existing, job.delivery_status, is_new=False)
        logger.warning(f"[{job_id}] Reclaiming notification {existing.id}: claim lease lapsed before send")
        reclaimed = True

    reasons, pdf = check_delivery_eligibility(deps, job, assessment)
    if reasons:
        raise PreconditionFailed(
            f"Job {job_id} not ready for delivery: {', '.join(reasons)}",
            code="DELIVERY_NOT_READY",
            details={"reasons": reasons},
        )

    if job.delivery_status != DeliveryStatus.READY.value:
        store.update_job(
            job_id, expected={"delivery_status": job.delivery_status}, delivery_status=DeliveryStatus.READY.value
        )

    channel = channel or NotificationChannel.IN_APP.value
    if not has_consent(store, assessment.patient_ref, channel):
        logger.warning(
            f"[{job_id}] Delivery blocked: no consent for channel {channel}",
            extra={"job_id": job_id, "stage": "delivery", "error_code": "CONSENT_NOT_VERIFIED"},
        )
        raise ConsentNotVerified(f"No consent recorded for channel {channel}", details={"channel": channel})

    values = {
        "channel": channel,
        "status": NotificationStatus.PENDING.value,
        "pdf_artifact_id": pdf.id,
        "content_json": notification_content(pdf.id),
        "attempts": 0,
    }
    if reclaimed:
        store.update_row(
            NotificationRecord,
            existing.id,
            channel=channel,
            pdf_artifact_id=pdf.id,
            content_json=values["content_json"],
        )
        row, won = store.find(NotificationRecord, id=existing.id), True
    else:
        row, won = _claim(deps, job_id, existing, values)
    if not won:
        logger.info(f"[{job_id}] Notification {row.id} already claimed by another caller")
        current = store.get_job(job_id)
        return _result(row, current.delivery_status, is_new=False)

    trigger = (job.delivery_triggers or 0) + 1
    store.update_job(job_id, delivery_triggers=trigger, delivery_attempted_at=utcnow())

    outgoing = OutgoingNotification(
        notification_id=row.id,
        job_id=job_id,
        notification_type=notification_type,
        channel=channel,
        pdf_artifact_id=pdf.id,
    )
    attempts = 0

    def _send() -> NotificationStatus:
        nonlocal attempts
        attempts += 1
        sent = NotificationStatus(deps.transport.send(outgoing))
        if sent == NotificationStatus.FAILED:
            raise TransientTransportFailure("Transport reported failed send", code="TRANSPORT_REPORTED_FAILURE")
        return sent

    try:
        status = deps.delivery_policy().call(_send)
    except Exception as exc:
        error_code = exc.code if isinstance(exc, PipelineError) else "DELIVERY_ERROR"
        now = utcnow()
        store.update_row(
            NotificationRecord,
            row.id,
            status=NotificationStatus.FAILED.value,
            attempts=(row.attempts or 0) + attempts,
            last_error_code=error_code,
            updated_at=now,
        )
        store.update_job(job_id, delivery_status=DeliveryStatus.FAILED.value)
        deps.record_audit(
            job_id,
            f"notification.failed:{row.id}:{trigger}",
            "notification.failed",
            notification_id=row.id,
            error_code=error_code,
            attempts=attempts,
        )
        logger.warning(
            f"[{job_id}] Delivery failed after {attempts} attempt(s): {error_code}",
            extra={"job_id": job_id, "stage": "delivery", "error_code": error_code},
        )
        failed = store.find(NotificationRecord, id=row.id)
        return _result(failed, DeliveryStatus.FAILED.value, is_new=True, reasons=[error_code])

    now = utcnow()
    if status == NotificationStatus.PENDING:
        status = NotificationStatus.SENT
    store.update_row(
        NotificationRecord,
        row.id,
        status=status.value,
        attempts=(row.attempts or 0) + attempts,
        sent_at=now,
        delivered_at=now if status == NotificationStatus.DELIVERED else None,
    )
    store.update_job(job_id, delivery_status=DeliveryStatus.DELIVERED.value, delivered_at=now)
    deps.record_audit(
        job_id,
        f"notification.sent:{row.id}",
        "notification.sent",
        notification_id=row.id,
        channel=channel,
        pdf_id=pdf.id,
    )
    logger.info(f"[{job_id}] Notification {row.id} {status.value} via {channel}")
    return _result(store.find(NotificationRecord, id=row.id), DeliveryStatus.DELIVERED.value, is_new=True)


def record_delivery_callback(
    notification_id: str, status: str, deps: Optional[PipelineDeps] = None
) -> NotificationRecord:
    """
    Apply a transport status callback.

    Status only moves forward (pending -> sent -> delivered) or to failed;
    failed and delivered are terminal and late or duplicate callbacks are ignored.
    """
    deps = deps or PipelineDeps()
    store = deps.store
    row = store.find(NotificationRecord, id=notification_id)
    if row is None:
        raise PreconditionFailed(f"Notification {notification_id} not found", code="NOTIFICATION_NOT_FOUND")
    try:
        new_status = NotificationStatus(status)
    except ValueError:
        raise PreconditionFailed(f"Unknown notification status {status}", code="INVALID_NOTIFICATION_STATUS")

    current = NotificationStatus(row.status)
    if row.status in _TERMINAL_NOTIFICATION:
        logger.info(f"[{row.job_id}] Ignoring {new_status.value} callback for {current.value} notification")
        return row
    if new_status != NotificationStatus.FAILED and (
        NOTIFICATION_STATUS_RANK[new_status] <= NOTIFICATION_STATUS_RANK[current]
    ):
        logger.info(f"[{row.job_id}] Ignoring {new_status.value} callback for {current.value} notification")
        return row

    now = utcnow()
    values = {"status": new_status.value, "updated_at": now}
    if new_status == NotificationStatus.DELIVERED:
        values["delivered_at"] = now
    if new_status == NotificationStatus.FAILED:
        values["last_error_code"] = "TRANSPORT_REPORTED_FAILURE"

    applied = store.update_row(NotificationRecord, row.id, expected={"status": current.value}, **values)
    if applied:
        if new_status == NotificationStatus.FAILED:
            store.update_job(row.job_id, delivery_status=DeliveryStatus.FAILED.value)
        deps.record_audit(
            row.job_id,
            f"notification.{new_status.value}:{row.id}",
            f"notification.{new_status.value}",
            notification_id=row.id,
        )
    return store.find(NotificationRecord, id=row.id)


def process_pending_deliveries(limit: int = 50, deps: Optional[PipelineDeps] = None) -> list[DeliveryStageResult]:
    """Drive delivery for completed jobs that have not been delivered yet."""
    deps = deps or PipelineDeps()
    store = deps.store
    with store.session() as session:
        job_ids = [
            job_id
            for (job_id,) in session.query(ProcessingJob.id)
            .filter(
                ProcessingJob.status == JobStatus.COMPLETED.value,
                ProcessingJob.stage == Stage.COMPLETED.value,
                ProcessingJob.delivery_status.in_(_SWEEPABLE),
                ProcessingJob.delivery_triggers < deps.settings.delivery_max_triggers,
            )
            .order_by(ProcessingJob.completed_at.asc(), ProcessingJob.id.asc())
            .limit(limit)
            .all()
        ]

    results: list[DeliveryStageResult] = []
    for job_id in job_ids:
        try:
            results.append(process_delivery_stage(job_id, deps=deps))
        except PipelineError as exc:
            logger.info(f"[{job_id}] Delivery skipped: {exc.code}")
    return results
