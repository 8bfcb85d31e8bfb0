from typing import Any, Optional

from pydantic import BaseModel, Field

from .enums import (
    DeliveryStatus,
    FindingSeverity,
    JobStatus,
    NotificationStatus,
    RiskLevel,
    SafetyAction,
    SafetySeverity,
    SectionKey,
    Stage,
    ValidationOutcome,
)


# ── Risk ──────────────────────────────────────────────────────────────────


class RiskFactor(BaseModel):
    key: str
    label: str
    score: float = Field(ge=0, le=100)
    weight: float = Field(ge=0, le=1)
    risk_level: RiskLevel


class RiskBundlePayload(BaseModel):
    """Computed risk factors. Contains no timestamps so identical inputs hash identically."""
    bundle_version: str = "v1"
    algorithm_version: str
    job_id: str
    program_tier: Optional[str] = None
    factors: list[RiskFactor] = Field(min_length=1)
    overall_score: float = Field(ge=0, le=100)
    risk_level: RiskLevel
    answers_hash: str


# ── Ranking ───────────────────────────────────────────────────────────────


class InterventionTopic(BaseModel):
    topic_id: str
    topic_label: str
    pillar_key: Optional[str] = None
    content_key: Optional[str] = None


class ScoreComponent(BaseModel):
    score: int = Field(ge=0, le=100)
    signals: list[str] = Field(default_factory=list)


class RankedIntervention(BaseModel):
    topic: InterventionTopic
    impact: ScoreComponent
    feasibility: ScoreComponent
    priority_score: int = Field(ge=0, le=100)
    rank: int = Field(ge=1)
    tier_compatibility: list[str] = Field(default_factory=list)


class RankingPayload(BaseModel):
    ranking_version: str = "v1"
    algorithm_version: str
    registry_version: str
    registry_hash: str
    risk_bundle_id: str
    job_id: str
    program_tier: Optional[str] = None
    ranked_interventions: list[RankedIntervention]
    top_interventions: list[RankedIntervention]


# ── Validation (layer 1) ──────────────────────────────────────────────────


class ValidationFinding(BaseModel):
    finding_id: str
    rule_key: str
    severity: FindingSeverity
    section_key: str
    message_code: str
    matched: Optional[str] = Field(default=None, max_length=80)


class ValidationPayload(BaseModel):
    result: ValidationOutcome
    rules_engine_version: str
    sections_hash: str
    rules_evaluated: int = 0
    findings: list[ValidationFinding] = Field(default_factory=list)
    unknown_reason: Optional[str] = None


# ── Safety (layer 2) ──────────────────────────────────────────────────────


class SafetyFinding(BaseModel):
    category: str
    severity: SafetySeverity
    section_key: Optional[str] = None
    reason: str = Field(max_length=500)
    suggested_action: Optional[str] = Field(default=None, max_length=500)


class SafetyPayload(BaseModel):
    action: SafetyAction
    severity: SafetySeverity
    summary: str = ""
    findings: list[SafetyFinding] = Field(default_factory=list)
    safety_score: Optional[float] = None
    model_action: Optional[SafetyAction] = None
    unknown_reason: Optional[str] = None


# ── Stage outcomes ────────────────────────────────────────────────────────


class StageOutcome(BaseModel):
    """What the orchestrator returns from advance(); never raises."""
    job_id: str
    stage: Optional[Stage] = None
    success: bool
    is_new: bool = False
    artifact_id: Optional[str] = None
    job_status: Optional[JobStatus] = None
    next_stage: Optional[Stage] = None
    review_required: bool = False
    error_code: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class RiskStageResult(BaseModel):
    bundle_id: str
    is_new_bundle: bool
    inputs_hash: str


class RankingStageResult(BaseModel):
    ranking_id: str
    is_new: bool
    inputs_hash: str


class SectionRef(BaseModel):
    section_id: str
    section_key: SectionKey
    inputs_hash: str


class ContentStageResult(BaseModel):
    sections: list[SectionRef]
    generated: list[SectionKey]
    sections_hash: str


class ResultsStageResult(BaseModel):
    result_id: str
    is_new: bool


class ValidationStageResult(BaseModel):
    validation_id: str
    result: ValidationOutcome
    findings: list[ValidationFinding]
    is_new: bool


class SafetyStageResult(BaseModel):
    safety_id: str
    action: SafetyAction
    severity: SafetySeverity
    findings: list[SafetyFinding]
    is_new: bool


class PdfStageResult(BaseModel):
    pdf_id: str
    path: str
    is_new: bool


class DeliveryStageResult(BaseModel):
    notification_id: Optional[str] = None
    status: Optional[NotificationStatus] = None
    delivery_status: DeliveryStatus
    is_new: bool = False
    reasons: list[str] = Field(default_factory=list)
