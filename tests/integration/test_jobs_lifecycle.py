from __future__ import annotations

import pytest

from apps.worker.jobs import (
    create_processing_job,
    list_jobs_requiring_review,
    mark_job_failed,
    record_review_decision,
    require_review,
    retry_job,
)
from packages.db.models import AuditEvent, ProcessingJob, ReviewRecord
from packages.shared.errors import PreconditionFailed
from packages.shared.models.enums import JobStatus, ReviewStatus, Stage


def test_create_is_idempotent_per_correlation_id(deps, make_assessment):
    assessment = make_assessment()
    job, created = create_processing_job(assessment.id, program_tier="tier-1-essential", deps=deps)
    again, created_again = create_processing_job(assessment.id, deps=deps)
    other, created_other = create_processing_job(assessment.id, correlation_id="rerun-2", deps=deps)

    assert created and not created_again and created_other
    assert again.id == job.id
    assert other.id != job.id
    assert job.status == JobStatus.PENDING.value
    assert job.stage == Stage.RISK.value
    assert job.algorithm_version == "v1.0.0"
    assert deps.store.count(ProcessingJob, assessment_id=assessment.id) == 2
    assert deps.store.count(AuditEvent, job_id=job.id, event_type="job.created") == 1


def test_create_requires_assessment(deps):
    with pytest.raises(PreconditionFailed) as exc:
        create_processing_job("missing", deps=deps)
    assert exc.value.code == "ASSESSMENT_MISSING"


def test_retry_only_applies_to_failed_jobs(deps, make_job):
    job = make_job()
    with pytest.raises(PreconditionFailed) as exc:
        retry_job(job.id, deps=deps)
    assert exc.value.code == "JOB_NOT_FAILED"


def test_retry_stops_at_max_attempts(deps, make_job):
    job = make_job()
    deps.store.update_job(job.id, status=JobStatus.FAILED.value, attempt=3)
    with pytest.raises(PreconditionFailed) as exc:
        retry_job(job.id, deps=deps)
    assert exc.value.code == "MAX_ATTEMPTS_EXCEEDED"


def test_mark_failed_redacts_message(deps, make_job):
    job = make_job()
    mark_job_failed(deps.store, job.id, "BOOM", "contact pat@example.org on 2024-02-03 " + "x" * 600)
    failed = deps.store.get_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert "pat@example.org" not in failed.error_message
    assert "2024-02-03" not in failed.error_message
    assert len(failed.error_message) <= 500


def test_review_decisions(deps, make_job):
    job = make_job()
    require_review(deps.store, job.id, reset=True)
    assert [j.id for j in list_jobs_requiring_review(deps.store)] == [job.id]

    with pytest.raises(PreconditionFailed) as exc:
        record_review_decision(job.id, approved=True, reviewer_role="patient", deps=deps)
    assert exc.value.code == "REVIEWER_ROLE_NOT_ALLOWED"

    record_review_decision(job.id, approved=False, reviewer_role="clinician", note_code="TONE", deps=deps)
    decided = record_review_decision(job.id, approved=True, reviewer_role="admin", deps=deps)
    assert decided.review_status == ReviewStatus.APPROVED.value
    assert deps.store.count(ReviewRecord, job_id=job.id) == 2
    assert deps.store.count(AuditEvent, job_id=job.id, event_type="review.decided") == 2
    assert list_jobs_requiring_review(deps.store) == []


def test_failed_jobs_are_listed_for_review(deps, make_job):
    job = make_job()
    mark_job_failed(deps.store, job.id, "BOOM", "failed")
    assert [j.id for j in list_jobs_requiring_review(deps.store)] == [job.id]


def test_review_of_unknown_job(deps):
    with pytest.raises(PreconditionFailed) as exc:
        record_review_decision("missing", approved=True, reviewer_role="clinician", deps=deps)
    assert exc.value.code == "JOB_NOT_FOUND"
