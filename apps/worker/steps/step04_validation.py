"""
Step 04 - Medical validation, layer 1.
Deterministic rules over the current sections. Anything the engine cannot
evaluate with certainty resolves to UNKNOWN, which routes the job to review.
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from apps.worker.jobs import require_review
from apps.worker.lib.rule_registry import RuleRegistry, ValidationRule
from apps.worker.pipeline_context import PipelineDeps, load_job, require_current
from apps.worker.steps.step01_risk import current_risk_bundle
from apps.worker.steps.step03_content import current_sections
from packages.db.models import MedicalValidationResult, ProcessingJob
from packages.shared.models import RiskBundlePayload, ValidationFinding, ValidationPayload, ValidationStageResult
from packages.shared.models.enums import FindingSeverity, RiskLevel, RuleKind, ValidationOutcome
from packages.shared.utils.hashing import stable_id

logger = logging.getLogger(__name__)


class _Undecidable(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def risk_signals(bundle: RiskBundlePayload) -> set[str]:
    signals = {f"risk_level_{bundle.risk_level.value}"}
    for factor in bundle.factors:
        signals.add(f"{factor.key}_{factor.risk_level.value}")
        if factor.key == "sleep" and factor.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            signals.add("poor_sleep")
    return signals


def risk_scores(bundle: RiskBundlePayload) -> dict[str, float]:
    scores = {"risk_score": bundle.overall_score}
    scores.update({f.key: f.score for f in bundle.factors})
    return scores


def _finding(rule: ValidationRule, section_key: str, matched: Optional[str]) -> ValidationFinding:
    return ValidationFinding(
        finding_id=stable_id("vf", rule.key, section_key),
        rule_key=rule.key,
        severity=rule.severity,
        section_key=section_key,
        message_code=rule.message_code,
        matched=(matched or "")[:80] or None,
    )


def _apply_rule(
    rule: ValidationRule,
    sections: list[tuple[str, str]],
    signals: set[str],
    scores: dict[str, float],
) -> list[ValidationFinding]:
    applicable = [(key, text) for key, text in sections if rule.applies_to(key)]
    findings: list[ValidationFinding] = []

    if rule.kind == RuleKind.PATTERN.value:
        if not rule.pattern:
            raise _Undecidable(f"INVALID_PATTERN:{rule.key}")
        try:
            pattern = re.compile(rule.pattern, re.IGNORECASE | re.DOTALL)
        except re.error:
            raise _Undecidable(f"INVALID_PATTERN:{rule.key}")
        for key, text in applicable:
            match = pattern.search(text)
            if match:
                findings.append(_finding(rule, key, match.group(0)))
        return findings

    if rule.kind == RuleKind.KEYWORD.value:
        if not rule.keywords:
            raise _Undecidable(f"EMPTY_KEYWORDS:{rule.key}")
        for key, text in applicable:
            lowered = text.lower()
            hit = next((kw for kw in rule.keywords if kw.lower() in lowered), None)
            if hit:
                findings.append(_finding(rule, key, hit))
        return findings

    if rule.kind == RuleKind.CONTRAINDICATION.value:
        if not signals.intersection(rule.risk_signals):
            return findings
        for key, text in applicable:
            lowered = text.lower()
            hit = next((p for p in rule.conflicting_patterns if p.lower() in lowered), None)
            if hit:
                findings.append(_finding(rule, key, hit))
        return findings

    if rule.kind == RuleKind.OUT_OF_BOUNDS.value:
        if not rule.field or rule.field not in scores:
            raise _Undecidable(f"MISSING_FIELD:{rule.key}")
        value = scores[rule.field]
        if (rule.min_value is not None and value < rule.min_value) or (
            rule.max_value is not None and value > rule.max_value
        ):
            findings.append(_finding(rule, "all", f"{rule.field}={value}"))
        return findings

    raise _Undecidable(f"UNKNOWN_RULE_KIND:{rule.kind}")


def validate_sections(
    sections: Iterable[tuple[str, str]],
    bundle: RiskBundlePayload,
    rules_engine_version: str,
    sections_digest: str,
    registry: RuleRegistry,
) -> ValidationPayload:
    """Never raises: every failure mode is an UNKNOWN result."""
    sections = list(sections)
    findings: list[ValidationFinding] = []
    evaluated = 0
    try:
        rule_keys = registry.rule_set(rules_engine_version)
        if rule_keys is None:
            raise _Undecidable(f"UNKNOWN_ENGINE_VERSION:{rules_engine_version}")
        if not rule_keys:
            raise _Undecidable("EMPTY_RULE_SET")
        signals, scores = risk_signals(bundle), risk_scores(bundle)
        for rule_key in rule_keys:
            rule = registry.get(rule_key)
            if rule is None:
                raise _Undecidable(f"UNKNOWN_RULE_KEY:{rule_key}")
            if not rule.is_active:
                continue
            findings.extend(_apply_rule(rule, sections, signals, scores))
            evaluated += 1
    except _Undecidable as exc:
        return ValidationPayload(
            result=ValidationOutcome.UNKNOWN,
            rules_engine_version=rules_engine_version,
            sections_hash=sections_digest,
            rules_evaluated=evaluated,
            findings=findings,
            unknown_reason=exc.reason,
        )
    except Exception:
        logger.exception("Rule evaluation failed")
        return ValidationPayload(
            result=ValidationOutcome.UNKNOWN,
            rules_engine_version=rules_engine_version,
            sections_hash=sections_digest,
            rules_evaluated=evaluated,
            findings=findings,
            unknown_reason="INTERNAL_ERROR",
        )

    failed = any(f.severity == FindingSeverity.CRITICAL for f in findings)
    return ValidationPayload(
        result=ValidationOutcome.FAIL if failed else ValidationOutcome.PASS,
        rules_engine_version=rules_engine_version,
        sections_hash=sections_digest,
        rules_evaluated=evaluated,
        findings=findings,
    )


def current_validation(
    deps: PipelineDeps, job: ProcessingJob, sections_digest: str
) -> MedicalValidationResult:
    return require_current(
        deps.store,
        MedicalValidationResult,
        "VALIDATION",
        job.id,
        sections_hash=sections_digest,
        rules_engine_version=deps.settings.rules_engine_version,
    )


def _result(row: MedicalValidationResult, is_new: bool) -> ValidationStageResult:
    payload = ValidationPayload.model_validate(row.payload_json)
    return ValidationStageResult(
        validation_id=row.id, result=payload.result, findings=payload.findings, is_new=is_new
    )


def process_validation_stage(job_id: str, deps: Optional[PipelineDeps] = None) -> ValidationStageResult:
    deps = deps or PipelineDeps()
    store = deps.store
    job, assessment = load_job(store, job_id)
    rows, digest = current_sections(deps, job, assessment)
    engine_version = deps.settings.rules_engine_version

    existing = store.find(
        MedicalValidationResult, job_id=job_id, sections_hash=digest, rules_engine_version=engine_version
    )
    if existing is not None:
        if existing.result != ValidationOutcome.PASS.value:
            require_review(store, job_id, reset=False)
        return _result(existing, is_new=False)

    bundle = current_risk_bundle(store, job, assessment)
    payload = validate_sections(
        [(r.section_key, r.content) for r in rows],
        RiskBundlePayload.model_validate(bundle.payload_json),
        engine_version,
        digest,
        deps.rules,
    )
    row, is_new = store.insert_or_get(
        MedicalValidationResult,
        {"job_id": job_id, "sections_hash": digest, "rules_engine_version": engine_version},
        {"result": payload.result.value, "payload_json": payload.model_dump(mode="json")},
    )
    if row.result != ValidationOutcome.PASS.value:
        require_review(store, job_id, reset=is_new)
        logger.warning(
            f"[{job_id}] Validation {row.result}; review required",
            extra={"job_id": job_id, "stage": "validation", "error_code": f"VALIDATION_{row.result}"},
        )
    if is_new:
        deps.record_audit(
            job_id,
            f"validation.created:{row.id}",
            "validation.created",
            validation_id=row.id,
            result=row.result,
            rules_engine_version=engine_version,
            sections_hash=digest,
        )
    return _result(row, is_new)
