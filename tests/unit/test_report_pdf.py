from __future__ import annotations

import io
from pathlib import Path

from pypdf import PdfReader

from apps.worker.steps.export_render.report_pdf import RENDERER_VERSION, ReportlabRenderer, generate_report_pdf
from packages.shared.storage import DATA_DIR

SECTIONS = [
    ("overview", "v1.0.0", "Your overall risk score is 57.5 of 100 (level: high)."),
    ("risk_summary", "v1.0.0", "Risk summary\n\n- Stress load (stress): 75 [critical]"),
    ("recommendations", "v1.0.0", "Recommended actions\n\n1. Sleep Hygiene Practices & <routines>"),
]


def _text(pdf_bytes: bytes) -> str:
    reader = PdfReader(io.BytesIO(pdf_bytes))
    text = " ".join(page.extract_text() or "" for page in reader.pages)
    return " ".join(text.split())


def test_report_contains_sections_and_disclaimer():
    text = _text(generate_report_pdf("job-123", SECTIONS))
    assert "Assessment Report" in text
    assert "Reference: job-123" in text
    assert "Risk Summary" in text
    assert "Stress load" in text
    assert "<routines>" in text
    assert "does not contain a diagnosis" in text


def test_rendering_is_byte_stable():
    assert generate_report_pdf("job-123", SECTIONS) == generate_report_pdf("job-123", SECTIONS)


def test_renderer_stores_under_data_dir():
    rendered = ReportlabRenderer().render("job-abc", SECTIONS, "f" * 64)
    path = Path(rendered.path)
    assert path.exists()
    assert path.resolve().is_relative_to(DATA_DIR.resolve())
    assert path.name == f"report_{'f' * 16}.pdf"
    assert rendered.size == path.stat().st_size
    assert len(rendered.sha256) == 64
    assert ReportlabRenderer.version == RENDERER_VERSION
