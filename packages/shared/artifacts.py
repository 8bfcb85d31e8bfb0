"""
Central artifact registry for worker, API, and tests.
"""
from __future__ import annotations

from collections.abc import Iterable

from packages.shared.models.enums import Stage

ARTIFACT_RISK_BUNDLE = "risk_bundle"
ARTIFACT_PRIORITY_RANKING = "priority_ranking"
ARTIFACT_REPORT_SECTION = "report_section"
ARTIFACT_MEDICAL_VALIDATION = "medical_validation"
ARTIFACT_SAFETY_CHECK = "safety_check"
ARTIFACT_PDF = "pdf"
ARTIFACT_NOTIFICATION = "notification"


# Artifact kind written by each stage.
STAGE_ARTIFACT_MAP: dict[Stage, str] = {
    Stage.RISK: ARTIFACT_RISK_BUNDLE,
    Stage.RANKING: ARTIFACT_PRIORITY_RANKING,
    Stage.CONTENT: ARTIFACT_REPORT_SECTION,
    Stage.VALIDATION: ARTIFACT_MEDICAL_VALIDATION,
    Stage.SAFETY_CHECK: ARTIFACT_SAFETY_CHECK,
    Stage.PDF: ARTIFACT_PDF,
    Stage.DELIVERY: ARTIFACT_NOTIFICATION,
}


VALID_ARTIFACT_TYPES: tuple[str, ...] = tuple(STAGE_ARTIFACT_MAP.values())


# Artifact kinds a job must hold before delivery may be attempted.
REQUIRED_DELIVERY_ARTIFACT_TYPES: tuple[str, ...] = (
    ARTIFACT_RISK_BUNDLE,
    ARTIFACT_PRIORITY_RANKING,
    ARTIFACT_REPORT_SECTION,
    ARTIFACT_MEDICAL_VALIDATION,
    ARTIFACT_SAFETY_CHECK,
    ARTIFACT_PDF,
)


def is_valid_artifact_type(artifact_type: str) -> bool:
    return artifact_type in VALID_ARTIFACT_TYPES


def artifact_type_for_stage(stage: Stage) -> str | None:
    return STAGE_ARTIFACT_MAP.get(stage)


def missing_required_types(artifact_types: Iterable[str]) -> list[str]:
    known = set(artifact_types)
    return [atype for atype in REQUIRED_DELIVERY_ARTIFACT_TYPES if atype not in known]
