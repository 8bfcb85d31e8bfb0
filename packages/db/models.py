"""
SQLAlchemy ORM models for report-pipeline persistence.

Every artifact table carries a unique constraint on its idempotency key so a
losing concurrent writer gets an IntegrityError and re-reads the winner's row.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone as dt_timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship

def _uuid():
    return uuid.uuid4().hex

def utcnow():
    return datetime.now(dt_timezone.utc)

class Base(DeclarativeBase):
    pass


class Assessment(Base):
    __tablename__ = "assessments"

    id = Column(String(120), primary_key=True, default=_uuid)
    patient_ref = Column(String(120), nullable=False)  # opaque reference, never copied into content
    assessment_key = Column(String(120), nullable=False, default="stress-resilience")
    answers_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    jobs = relationship("ProcessingJob", back_populates="assessment", cascade="all, delete-orphan")


class ProcessingJob(Base):
    __tablename__ = "processing_jobs"
    __table_args__ = (
        UniqueConstraint("assessment_id", "correlation_id", name="uq_processing_jobs_assessment_correlation"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    assessment_id = Column(String(120), ForeignKey("assessments.id"), nullable=False)
    correlation_id = Column(String(120), nullable=False)
    status = Column(String(20), default="pending")  # pending | in_progress | completed | failed
    stage = Column(String(20), default="risk")
    algorithm_version = Column(String(40), nullable=False)
    program_tier = Column(String(40), nullable=True)
    attempt = Column(Integer, default=1)
    max_attempts = Column(Integer, default=3)

    review_required = Column(Boolean, default=False)
    review_status = Column(String(20), default="not_required")  # not_required | pending | approved | rejected

    delivery_status = Column(String(20), default="NOT_READY")  # NOT_READY | READY | DELIVERED | FAILED
    delivery_triggers = Column(Integer, default=0)
    delivery_attempted_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    error_code = Column(String(80), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Worker management
    claimed_at = Column(DateTime, nullable=True)
    worker_id = Column(String(100), nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)

    assessment = relationship("Assessment", back_populates="jobs")
    risk_bundles = relationship("RiskBundle", back_populates="job", cascade="all, delete-orphan")
    rankings = relationship("PriorityRanking", back_populates="job", cascade="all, delete-orphan")
    sections = relationship("ReportSection", back_populates="job", cascade="all, delete-orphan")
    validations = relationship("MedicalValidationResult", back_populates="job", cascade="all, delete-orphan")
    safety_checks = relationship("SafetyCheckResult", back_populates="job", cascade="all, delete-orphan")
    pdfs = relationship("PdfArtifact", back_populates="job", cascade="all, delete-orphan")
    notifications = relationship("NotificationRecord", back_populates="job", cascade="all, delete-orphan")
    reviews = relationship("ReviewRecord", back_populates="job", cascade="all, delete-orphan")


class RiskBundle(Base):
    __tablename__ = "risk_bundles"
    __table_args__ = (UniqueConstraint("job_id", "inputs_hash", name="uq_risk_bundles_job_inputs"),)

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), ForeignKey("processing_jobs.id"), nullable=False)
    inputs_hash = Column(String(64), nullable=False)
    algorithm_version = Column(String(40), nullable=False)
    payload_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    job = relationship("ProcessingJob", back_populates="risk_bundles")


class PriorityRanking(Base):
    __tablename__ = "priority_rankings"
    __table_args__ = (UniqueConstraint("job_id", "inputs_hash", name="uq_priority_rankings_job_inputs"),)

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), ForeignKey("processing_jobs.id"), nullable=False)
    risk_bundle_id = Column(String(120), ForeignKey("risk_bundles.id"), nullable=False)
    inputs_hash = Column(String(64), nullable=False)
    algorithm_version = Column(String(40), nullable=False)
    registry_version = Column(String(40), nullable=False)
    payload_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    job = relationship("ProcessingJob", back_populates="rankings")


class ReportSection(Base):
    __tablename__ = "report_sections"
    __table_args__ = (
        UniqueConstraint("job_id", "section_key", "inputs_hash", name="uq_report_sections_job_key_inputs"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), ForeignKey("processing_jobs.id"), nullable=False)
    section_key = Column(String(40), nullable=False)
    prompt_id = Column(String(80), nullable=False)
    prompt_version = Column(String(40), nullable=False)
    inputs_hash = Column(String(64), nullable=False)
    content = Column(Text, nullable=False)
    guardrail_flags_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    job = relationship("ProcessingJob", back_populates="sections")


class MedicalValidationResult(Base):
    __tablename__ = "medical_validation_results"
    __table_args__ = (
        UniqueConstraint(
            "job_id", "sections_hash", "rules_engine_version", name="uq_medical_validation_job_sections_engine"
        ),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), ForeignKey("processing_jobs.id"), nullable=False)
    sections_hash = Column(String(64), nullable=False)
    rules_engine_version = Column(String(40), nullable=False)
    result = Column(String(20), nullable=False)  # PASS | FAIL | UNKNOWN
    payload_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    job = relationship("ProcessingJob", back_populates="validations")


class SafetyCheckResult(Base):
    __tablename__ = "safety_check_results"
    __table_args__ = (
        UniqueConstraint("job_id", "evaluation_key_hash", name="uq_safety_check_job_evaluation_key"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), ForeignKey("processing_jobs.id"), nullable=False)
    evaluation_key_hash = Column(String(64), nullable=False)
    sections_hash = Column(String(64), nullable=False)
    prompt_version = Column(String(40), nullable=False)
    model_config_json = Column(JSON, nullable=False)
    action = Column(String(20), nullable=False)  # PASS | FLAG | BLOCK | UNKNOWN
    severity = Column(String(20), nullable=False)
    payload_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    job = relationship("ProcessingJob", back_populates="safety_checks")


class PdfArtifact(Base):
    __tablename__ = "pdf_artifacts"
    __table_args__ = (UniqueConstraint("job_id", "inputs_hash", name="uq_pdf_artifacts_job_inputs"),)

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), ForeignKey("processing_jobs.id"), nullable=False)
    inputs_hash = Column(String(64), nullable=False)
    sections_hash = Column(String(64), nullable=False)
    renderer_version = Column(String(40), nullable=False)
    storage_uri = Column(String(500), nullable=False)
    sha256 = Column(String(64), nullable=False)
    bytes = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    job = relationship("ProcessingJob", back_populates="pdfs")


class NotificationRecord(Base):
    __tablename__ = "notification_records"
    __table_args__ = (
        UniqueConstraint("job_id", "notification_type", name="uq_notification_records_job_type"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), ForeignKey("processing_jobs.id"), nullable=False)
    notification_type = Column(String(40), nullable=False)
    channel = Column(String(20), nullable=False)
    status = Column(String(20), default="pending")  # pending | sent | delivered | failed
    pdf_artifact_id = Column(String(120), ForeignKey("pdf_artifacts.id"), nullable=True)
    content_json = Column(JSON, nullable=True)
    attempts = Column(Integer, default=0)
    last_error_code = Column(String(80), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    job = relationship("ProcessingJob", back_populates="notifications")


class ConsentRecord(Base):
    __tablename__ = "consent_records"
    __table_args__ = (UniqueConstraint("patient_ref", "channel", name="uq_consent_records_patient_channel"),)

    id = Column(String(120), primary_key=True, default=_uuid)
    patient_ref = Column(String(120), nullable=False)
    channel = Column(String(20), nullable=False)
    granted = Column(Boolean, default=True)
    recorded_at = Column(DateTime, default=utcnow)


class ReviewRecord(Base):
    __tablename__ = "review_records"

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), ForeignKey("processing_jobs.id"), nullable=False)
    approved = Column(Boolean, nullable=False)
    reviewer_role = Column(String(40), nullable=False)
    reviewer_id = Column(String(120), nullable=True)
    note_code = Column(String(80), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    job = relationship("ProcessingJob", back_populates="reviews")


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (UniqueConstraint("job_id", "event_key", name="uq_audit_events_job_event_key"),)

    id = Column(String(120), primary_key=True, default=_uuid)
    job_id = Column(String(120), nullable=False)
    event_key = Column(String(200), nullable=False)
    event_type = Column(String(80), nullable=False)
    payload_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
