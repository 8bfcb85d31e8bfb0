"""
Step 03 - Report sections.
Render each section from its versioned prompt template, run the content
guardrail, and persist only when every section is acceptable. A section is
regenerated only when its own inputs hash changed.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from apps.worker.lib.content_guard import find_violations, free_text_values, truncate_at_word
from apps.worker.lib.intervention_registry import CONTENT_KEYS
from apps.worker.lib.prompt_registry import SECTION_PROMPT_IDS, PromptTemplate, render_template
from apps.worker.pipeline_context import (
    PipelineDeps,
    load_job,
    require_current,
    section_inputs_hash,
    sections_hash,
)
from apps.worker.pipeline_persistence import ArtifactStore
from apps.worker.steps.step01_risk import current_risk_bundle
from apps.worker.steps.step02_ranking import current_ranking
from packages.db.models import Assessment, PriorityRanking, ProcessingJob, ReportSection, RiskBundle
from packages.shared.errors import GuardrailViolation, PreconditionFailed
from packages.shared.models import (
    ContentStageResult,
    RankingPayload,
    ResultsStageResult,
    RiskBundlePayload,
    SectionRef,
)
from packages.shared.models.enums import SectionKey

logger = logging.getLogger(__name__)

SECTION_ORDER: tuple[SectionKey, ...] = (
    SectionKey.OVERVIEW,
    SectionKey.RISK_SUMMARY,
    SectionKey.RECOMMENDATIONS,
    SectionKey.TOP_INTERVENTIONS,
)

# Sections whose text depends on the ranking; the others only see the risk bundle.
RANKING_SECTIONS = frozenset({SectionKey.RECOMMENDATIONS, SectionKey.TOP_INTERVENTIONS})

RECOMMENDATION_LIMIT = 5
TOP_INTERVENTION_LIMIT = 3


def _fmt(score: float) -> str:
    return f"{score:g}"


def build_section_context(
    bundle: RiskBundlePayload,
    ranking: Optional[RankingPayload],
    answers: dict[str, Any],
) -> dict[str, Any]:
    """Placeholder values available to section templates."""
    factors = sorted(bundle.factors, key=lambda f: (-f.score, f.key))
    context: dict[str, Any] = {
        "risk_score": _fmt(bundle.overall_score),
        "risk_level": bundle.risk_level.value,
        "program_tier": bundle.program_tier or "none",
        "tier_line": f"Program tier: {bundle.program_tier}. " if bundle.program_tier else "",
        "factor_lines": "\n".join(
            f"- {f.label} ({f.key}): {_fmt(f.score)} [{f.risk_level.value}]" for f in factors
        ),
    }
    if ranking is not None:
        top = ranking.top_interventions
        context["recommendation_lines"] = "\n".join(
            f"{item.rank}. {item.topic.topic_label} (priority {item.priority_score}) [content:{item.topic.content_key}]"
            for item in top[:RECOMMENDATION_LIMIT]
        ) or "No specific recommendations are available."
        context["top_intervention_lines"] = "\n\n".join(
            f"{item.rank}. {item.topic.topic_label}\n"
            f"   - Priority: {item.priority_score}/100\n"
            f"   - Pillar: {item.topic.pillar_key}\n"
            f"   - See content:{item.topic.content_key}"
            for item in top[:TOP_INTERVENTION_LIMIT]
        ) or "No interventions are available."
    # Raw answers are addressable so the guardrail can refuse templates that echo them.
    for key, value in (answers or {}).items():
        context[f"answer.{key}"] = value
    return context


def _section_prompt(deps: PipelineDeps, section_key: SectionKey) -> PromptTemplate:
    prompt_id = SECTION_PROMPT_IDS[section_key]
    version = deps.settings.content_prompt_version
    prompt = deps.prompts.get(prompt_id, version)
    if prompt is None:
        raise PreconditionFailed(f"Prompt {prompt_id}@{version} is not registered", code="PROMPT_NOT_FOUND")
    return prompt


def _expected_section_hashes(
    deps: PipelineDeps, bundle: RiskBundle, ranking: PriorityRanking
) -> list[tuple[SectionKey, PromptTemplate, str]]:
    out = []
    for key in SECTION_ORDER:
        prompt = _section_prompt(deps, key)
        ranking_hash = ranking.inputs_hash if key in RANKING_SECTIONS else None
        out.append((key, prompt, section_inputs_hash(key.value, bundle.inputs_hash, ranking_hash, prompt.address)))
    return out


def current_sections(
    deps: PipelineDeps, job: ProcessingJob, assessment: Assessment
) -> tuple[list[ReportSection], str]:
    """Current section rows in report order plus their combined hash."""
    bundle = current_risk_bundle(deps.store, job, assessment)
    ranking = current_ranking(deps.store, job, bundle, deps.settings.ranking_top_n)
    rows = [
        require_current(deps.store, ReportSection, "SECTIONS", job.id, section_key=key.value, inputs_hash=h)
        for key, _prompt, h in _expected_section_hashes(deps, bundle, ranking)
    ]
    return rows, sections_hash(rows)


def _store_sections(
    store: ArtifactStore, job_id: str, drafts: list[tuple[SectionKey, PromptTemplate, str, str, list[str]]]
) -> list[tuple[ReportSection, bool]]:
    batch = [
        (
            {"job_id": job_id, "section_key": key.value, "inputs_hash": inputs_hash},
            {
                "prompt_id": prompt.prompt_id,
                "prompt_version": prompt.version,
                "content": content,
                "guardrail_flags_json": flags,
            },
        )
        for key, prompt, inputs_hash, content, flags in drafts
    ]
    return store.insert_many_or_get(ReportSection, batch)


def process_content_stage(job_id: str, deps: Optional[PipelineDeps] = None) -> ContentStageResult:
    deps = deps or PipelineDeps()
    store = deps.store
    job, assessment = load_job(store, job_id)
    answers = assessment.answers_json or {}
    bundle = current_risk_bundle(store, job, assessment)
    ranking = current_ranking(store, job, bundle, deps.settings.ranking_top_n)

    expected = _expected_section_hashes(deps, bundle, ranking)
    existing: dict[SectionKey, ReportSection] = {}
    to_generate = []
    for key, prompt, inputs_hash in expected:
        row = store.find(ReportSection, job_id=job_id, section_key=key.value, inputs_hash=inputs_hash)
        if row is not None:
            existing[key] = row
        else:
            to_generate.append((key, prompt, inputs_hash))

    drafts = []
    violations: dict[str, list[str]] = {}
    if to_generate:
        context = build_section_context(
            RiskBundlePayload.model_validate(bundle.payload_json),
            RankingPayload.model_validate(ranking.payload_json),
            answers,
        )
        free_texts = free_text_values(answers)
        for key, prompt, inputs_hash in to_generate:
            draft = render_template(prompt.template, context)
            draft, truncated = truncate_at_word(draft, prompt.max_output_length)
            found = find_violations(draft, free_texts, CONTENT_KEYS)
            if found:
                violations[key.value] = found
                continue
            drafts.append((key, prompt, inputs_hash, draft, ["TRUNCATED"] if truncated else []))

    if violations:
        logger.warning(
            f"[{job_id}] Section guardrail rejected {sorted(violations)}",
            extra={"job_id": job_id, "stage": "content", "error_code": "GUARDRAIL_VIOLATION"},
        )
        raise GuardrailViolation("Generated content rejected by guardrail", details={"violations": violations})

    generated: list[SectionKey] = []
    for row, is_new in _store_sections(store, job_id, drafts):
        key = SectionKey(row.section_key)
        existing[key] = row
        if is_new:
            generated.append(key)
            deps.record_audit(
                job_id,
                f"section.created:{row.id}",
                "section.created",
                section_id=row.id,
                section_key=row.section_key,
                prompt_version=row.prompt_version,
                inputs_hash=row.inputs_hash,
            )

    rows = [existing[key] for key in SECTION_ORDER]
    if generated:
        logger.info(f"[{job_id}] Generated sections {[k.value for k in generated]}")
    return ContentStageResult(
        sections=[
            SectionRef(section_id=r.id, section_key=SectionKey(r.section_key), inputs_hash=r.inputs_hash)
            for r in rows
        ],
        generated=generated,
        sections_hash=sections_hash(rows),
    )


def process_results_stage(
    job_id: str,
    algorithm_version: Optional[str] = None,
    deps: Optional[PipelineDeps] = None,
) -> ResultsStageResult:
    """
    The "results" stage is the content stage under another name. The result id
    is the combined hash of the section set.
    """
    deps = deps or PipelineDeps()
    if algorithm_version is not None:
        job = deps.store.get_job(job_id)
        if job is not None and job.algorithm_version != algorithm_version:
            raise PreconditionFailed(
                f"Job {job_id} uses algorithm {job.algorithm_version}, not {algorithm_version}",
                code="ALGORITHM_VERSION_MISMATCH",
            )
    result = process_content_stage(job_id, deps)
    return ResultsStageResult(result_id=result.sections_hash, is_new=bool(result.generated))
