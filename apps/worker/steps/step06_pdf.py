"""
Step 06 - PDF render.
Render the current, validated and safety-checked sections once per
(job, sections hash, renderer version).
"""
from __future__ import annotations

import logging
from typing import Optional

from apps.worker.pipeline_context import PipelineDeps, load_job, pdf_inputs_hash, require_current
from apps.worker.steps.step03_content import current_sections
from apps.worker.steps.step04_validation import current_validation
from apps.worker.steps.step05_safety import current_safety
from packages.db.models import PdfArtifact, ProcessingJob
from packages.shared.models import PdfStageResult

logger = logging.getLogger(__name__)


def current_pdf(deps: PipelineDeps, job: ProcessingJob, sections_digest: str) -> PdfArtifact:
    expected = pdf_inputs_hash(sections_digest, deps.renderer.version)
    return require_current(deps.store, PdfArtifact, "PDF", job.id, inputs_hash=expected)


def process_pdf_stage(job_id: str, deps: Optional[PipelineDeps] = None) -> PdfStageResult:
    deps = deps or PipelineDeps()
    store = deps.store
    job, assessment = load_job(store, job_id)
    sections, digest = current_sections(deps, job, assessment)
    # Both validation layers must have a verdict on these exact sections.
    current_validation(deps, job, digest)
    current_safety(deps, job, digest)

    renderer_version = deps.renderer.version
    inputs_hash = pdf_inputs_hash(digest, renderer_version)
    existing = store.find(PdfArtifact, job_id=job_id, inputs_hash=inputs_hash)
    if existing is not None:
        return PdfStageResult(pdf_id=existing.id, path=existing.storage_uri, is_new=False)

    rendered = deps.pdf_policy().call(
        deps.renderer.render,
        job_id,
        [(s.section_key, s.prompt_version, s.content) for s in sections],
        inputs_hash,
    )
    row, is_new = store.insert_or_get(
        PdfArtifact,
        {"job_id": job_id, "inputs_hash": inputs_hash},
        {
            "sections_hash": digest,
            "renderer_version": renderer_version,
            "storage_uri": rendered.path,
            "sha256": rendered.sha256,
            "bytes": rendered.size,
        },
    )
    if is_new:
        logger.info(f"[{job_id}] PDF {row.id} rendered ({rendered.size} bytes)")
        deps.record_audit(
            job_id, f"pdf.created:{row.id}", "pdf.created", pdf_id=row.id, sha256=row.sha256, inputs_hash=inputs_hash
        )
    return PdfStageResult(pdf_id=row.id, path=row.storage_uri, is_new=is_new)
