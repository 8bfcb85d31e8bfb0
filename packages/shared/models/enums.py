from enum import Enum


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Stage(str, Enum):
    RISK = "risk"
    RANKING = "ranking"
    CONTENT = "content"
    VALIDATION = "validation"
    SAFETY_CHECK = "safety_check"
    PDF = "pdf"
    DELIVERY = "delivery"
    COMPLETED = "completed"


# Order the orchestrator walks; delivery runs off a completed job.
STAGE_ORDER: tuple[Stage, ...] = (
    Stage.RISK,
    Stage.RANKING,
    Stage.CONTENT,
    Stage.VALIDATION,
    Stage.SAFETY_CHECK,
    Stage.PDF,
    Stage.COMPLETED,
)


def next_stage(stage: Stage) -> Stage:
    idx = STAGE_ORDER.index(stage)
    return STAGE_ORDER[min(idx + 1, len(STAGE_ORDER) - 1)]


class ReviewStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DeliveryStatus(str, Enum):
    NOT_READY = "NOT_READY"
    READY = "READY"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


NOTIFICATION_STATUS_RANK = {
    NotificationStatus.PENDING: 0,
    NotificationStatus.SENT: 1,
    NotificationStatus.DELIVERED: 2,
}


class NotificationType(str, Enum):
    REPORT_READY = "report_ready"


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"


class ValidationOutcome(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    UNKNOWN = "UNKNOWN"


class FindingSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class SafetyAction(str, Enum):
    PASS = "PASS"
    FLAG = "FLAG"
    BLOCK = "BLOCK"
    UNKNOWN = "UNKNOWN"


SAFETY_ACTION_RANK = {
    SafetyAction.PASS: 0,
    SafetyAction.FLAG: 1,
    SafetyAction.BLOCK: 2,
    SafetyAction.UNKNOWN: 3,
}


class SafetySeverity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class SectionKey(str, Enum):
    OVERVIEW = "overview"
    RISK_SUMMARY = "risk_summary"
    RECOMMENDATIONS = "recommendations"
    TOP_INTERVENTIONS = "top_interventions"


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class ProgramTier(str, Enum):
    TIER_1 = "tier-1-essential"
    TIER_2_5 = "tier-2-5-enhanced"
    TIER_2 = "tier-2-comprehensive"


class ScoringOperator(str, Enum):
    SUM = "SUM"
    WEIGHTED_SUM = "WEIGHTED_SUM"
    AVERAGE = "AVERAGE"
    MAX = "MAX"
    MIN = "MIN"
    THRESHOLD = "THRESHOLD"
    NORMALIZE = "NORMALIZE"


class RuleKind(str, Enum):
    PATTERN = "pattern"
    KEYWORD = "keyword"
    CONTRAINDICATION = "contraindication"
    OUT_OF_BOUNDS = "out_of_bounds"
