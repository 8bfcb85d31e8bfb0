"""
Step 05 - Safety check, layer 2.
Send PHI-redacted sections to the LLM evaluator and persist its structured
verdict. Unavailable model, timeout, unparseable or schema-invalid output all
persist action=UNKNOWN; nothing here ever defaults to PASS.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from apps.worker.jobs import require_review
from apps.worker.lib.prompt_registry import SAFETY_PROMPT_ID, render_template
from apps.worker.lib.retry_policy import call_with_timeout
from apps.worker.lib.safety_evaluator import SafetyPrompt
from apps.worker.pipeline_context import PipelineDeps, evaluation_key_hash, load_job, require_current
from apps.worker.steps.step01_risk import current_risk_bundle
from apps.worker.steps.step03_content import current_sections
from packages.db.models import ProcessingJob, ReportSection, SafetyCheckResult
from packages.shared.errors import PipelineError
from packages.shared.models import RiskBundlePayload, SafetyFinding, SafetyPayload, SafetyStageResult
from packages.shared.models.enums import SAFETY_ACTION_RANK, SafetyAction, SafetySeverity
from packages.shared.schema_validator import load_schema, validate_safety_output
from packages.shared.utils.redaction import redact_phi

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {
    SafetySeverity.NONE: 0,
    SafetySeverity.LOW: 1,
    SafetySeverity.MEDIUM: 2,
    SafetySeverity.HIGH: 3,
    SafetySeverity.CRITICAL: 4,
}


def model_config_for(deps: PipelineDeps) -> dict[str, Any]:
    if deps.evaluator is None:
        return {"provider": "unavailable", "model": deps.settings.safety_model}
    return dict(deps.evaluator.model_config)


def _action_from_findings(findings: list[SafetyFinding]) -> SafetyAction:
    worst = max((_SEVERITY_RANK.get(f.severity, 0) for f in findings), default=0)
    if worst >= _SEVERITY_RANK[SafetySeverity.HIGH]:
        return SafetyAction.BLOCK
    if worst >= _SEVERITY_RANK[SafetySeverity.MEDIUM]:
        return SafetyAction.FLAG
    return SafetyAction.PASS


def reconcile(raw: dict[str, Any]) -> SafetyPayload:
    """Build the payload from schema-valid output; the stricter of model action and findings wins."""
    findings = [SafetyFinding.model_validate(f) for f in raw.get("findings", [])]
    model_action = SafetyAction(raw["action"])
    derived = _action_from_findings(findings)
    action = max(model_action, derived, key=lambda a: SAFETY_ACTION_RANK[a])

    severity = SafetySeverity(raw["severity"])
    worst_finding = max(findings, key=lambda f: _SEVERITY_RANK.get(f.severity, 0), default=None)
    if worst_finding is not None and _SEVERITY_RANK[worst_finding.severity] > _SEVERITY_RANK[severity]:
        severity = worst_finding.severity
    return SafetyPayload(
        action=action,
        severity=severity,
        summary=raw.get("summary", ""),
        findings=findings,
        safety_score=raw.get("safety_score"),
        model_action=model_action,
    )


def unknown_payload(reason: str) -> SafetyPayload:
    return SafetyPayload(action=SafetyAction.UNKNOWN, severity=SafetySeverity.UNKNOWN, unknown_reason=reason)


def build_safety_prompt(deps: PipelineDeps, sections: list[ReportSection], bundle: RiskBundlePayload) -> Optional[SafetyPrompt]:
    template = deps.prompts.get(SAFETY_PROMPT_ID, deps.settings.safety_prompt_version)
    if template is None:
        return None
    content = "\n\n".join(f"## {s.section_key}\n{redact_phi(s.content)}" for s in sections)
    user = render_template(
        template.template,
        {
            "sections_content": content,
            "risk_score": f"{bundle.overall_score:g}",
            "risk_level": bundle.risk_level.value,
            "program_tier": bundle.program_tier or "none",
        },
    )
    return SafetyPrompt(system=template.system_prompt or "", user=user)


def evaluate_sections(deps: PipelineDeps, prompt: Optional[SafetyPrompt]) -> SafetyPayload:
    """Run the evaluator under timeout and retry; every failure becomes UNKNOWN."""
    if prompt is None:
        return unknown_payload("PROMPT_NOT_FOUND")
    if deps.evaluator is None:
        return unknown_payload("MODEL_UNAVAILABLE")
    try:
        raw = deps.safety_policy().call(
            call_with_timeout,
            deps.evaluator.evaluate,
            deps.settings.safety_timeout_seconds,
            prompt,
            load_schema(),
        )
    except PipelineError as exc:
        return unknown_payload(exc.code)
    except Exception as exc:
        logger.exception("Safety evaluator raised unexpectedly")
        return unknown_payload(f"EVALUATOR_ERROR:{type(exc).__name__}")

    is_valid, messages = validate_safety_output(raw)
    if not is_valid:
        logger.warning(f"Safety output failed schema validation ({len(messages)} errors)")
        return unknown_payload("SCHEMA_VIOLATION")
    return reconcile(raw)


def current_safety(deps: PipelineDeps, job: ProcessingJob, sections_digest: str) -> SafetyCheckResult:
    key = evaluation_key_hash(sections_digest, deps.settings.safety_prompt_version, model_config_for(deps))
    return require_current(deps.store, SafetyCheckResult, "SAFETY", job.id, evaluation_key_hash=key)


def _result(row: SafetyCheckResult, is_new: bool) -> SafetyStageResult:
    payload = SafetyPayload.model_validate(row.payload_json)
    return SafetyStageResult(
        safety_id=row.id, action=payload.action, severity=payload.severity, findings=payload.findings, is_new=is_new
    )


def process_safety_stage(job_id: str, deps: Optional[PipelineDeps] = None) -> SafetyStageResult:
    deps = deps or PipelineDeps()
    store = deps.store
    job, assessment = load_job(store, job_id)
    sections, digest = current_sections(deps, job, assessment)
    prompt_version = deps.settings.safety_prompt_version
    model_config = model_config_for(deps)
    eval_key = evaluation_key_hash(digest, prompt_version, model_config)

    existing = store.find(SafetyCheckResult, job_id=job_id, evaluation_key_hash=eval_key)
    if existing is not None:
        if existing.action != SafetyAction.PASS.value:
            require_review(store, job_id, reset=False)
        return _result(existing, is_new=False)

    bundle = RiskBundlePayload.model_validate(current_risk_bundle(store, job, assessment).payload_json)
    payload = evaluate_sections(deps, build_safety_prompt(deps, sections, bundle))

    row, is_new = store.insert_or_get(
        SafetyCheckResult,
        {"job_id": job_id, "evaluation_key_hash": eval_key},
        {
            "sections_hash": digest,
            "prompt_version": prompt_version,
            "model_config_json": model_config,
            "action": payload.action.value,
            "severity": payload.severity.value,
            "payload_json": payload.model_dump(mode="json"),
        },
    )
    if row.action != SafetyAction.PASS.value:
        require_review(store, job_id, reset=is_new)
        logger.warning(
            f"[{job_id}] Safety action {row.action}; review required",
            extra={"job_id": job_id, "stage": "safety_check", "error_code": f"SAFETY_{row.action}"},
        )
    if is_new:
        deps.record_audit(
            job_id,
            f"safety.created:{row.id}",
            "safety.created",
            safety_id=row.id,
            action=row.action,
            prompt_version=prompt_version,
            evaluation_key_hash=eval_key,
        )
    return _result(row, is_new)
