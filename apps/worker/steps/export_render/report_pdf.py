"""
Render report sections to PDF with reportlab.

Output is byte-stable for identical sections (``invariant=1`` pins the
document id and timestamps), so the stored sha256 is reproducible.
"""
from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Iterable, Protocol
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from packages.shared.errors import TransientTransportFailure
from packages.shared.storage import save_report, sha256_bytes

RENDERER_VERSION = "reportlab-v1"

SECTION_TITLES = {
    "overview": "Overview",
    "risk_summary": "Risk Summary",
    "recommendations": "Recommendations",
    "top_interventions": "Top Interventions",
}

DISCLAIMER = (
    "This report is generated for information purposes and has been checked by automated "
    "safety rules. It does not contain a diagnosis and does not replace advice from your care team."
)


@dataclass(frozen=True)
class RenderedPdf:
    path: str
    sha256: str
    size: int


class ReportRenderer(Protocol):
    version: str

    def render(self, job_id: str, sections: list[tuple[str, str, str]], inputs_hash: str) -> RenderedPdf: ...


def _paragraph_text(text: str) -> str:
    return "<br/>".join(escape(line) for line in text.splitlines())


def generate_report_pdf(job_id: str, sections: Iterable[tuple[str, str, str]]) -> bytes:
    """*sections* are ``(section_key, prompt_version, content)`` in report order."""
    sections = list(sections)
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=LETTER,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title="Assessment Report",
        invariant=1,
    )
    styles = getSampleStyleSheet()
    story = []

    # ── Title ─────────────────────────────────────────────────────────
    title_style = ParagraphStyle(
        "ReportTitle", parent=styles["Title"],
        fontSize=18, textColor=colors.HexColor("#2C3E50"),
    )
    story.append(Paragraph("Assessment Report", title_style))
    story.append(Spacer(1, 8))
    story.append(Paragraph(f"Reference: {escape(job_id)}", styles["Normal"]))
    story.append(Spacer(1, 16))

    # ── Contents table ────────────────────────────────────────────────
    header_style = ParagraphStyle("TblHeader", parent=styles["Normal"], fontSize=10, textColor=colors.white)
    cell_style = ParagraphStyle("TblCell", parent=styles["Normal"], fontSize=10)
    rows = [[Paragraph("<b>Section</b>", header_style), Paragraph("<b>Template</b>", header_style)]]
    for key, prompt_version, _content in sections:
        rows.append([
            Paragraph(SECTION_TITLES.get(key, key), cell_style),
            Paragraph(escape(prompt_version), cell_style),
        ])
    t = Table(rows, colWidths=[3.5 * inch, 2.0 * inch])
    t.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#2C3E50")),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#BDC3C7")),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F8F9FA")]),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ]))
    story.append(t)
    story.append(Spacer(1, 20))

    # ── Sections ──────────────────────────────────────────────────────
    for key, _prompt_version, content in sections:
        story.append(Paragraph(f"<b>{escape(SECTION_TITLES.get(key, key))}</b>", styles["Heading2"]))
        story.append(Spacer(1, 6))
        story.append(Paragraph(_paragraph_text(content), styles["Normal"]))
        story.append(Spacer(1, 14))

    disclaimer_style = ParagraphStyle(
        "Disclaimer", parent=styles["Normal"], fontSize=8, textColor=colors.HexColor("#7F8C8D"),
    )
    story.append(Spacer(1, 12))
    story.append(Paragraph(DISCLAIMER, disclaimer_style))

    doc.build(story)
    return buf.getvalue()


class ReportlabRenderer:
    version = RENDERER_VERSION

    def render(self, job_id: str, sections: list[tuple[str, str, str]], inputs_hash: str) -> RenderedPdf:
        pdf_bytes = generate_report_pdf(job_id, sections)
        try:
            path = save_report(job_id, f"report_{inputs_hash[:16]}.pdf", pdf_bytes)
        except OSError as exc:
            raise TransientTransportFailure(f"Could not store report: {exc.strerror}", code="PDF_WRITE_FAILED") from exc
        return RenderedPdf(path=str(path), sha256=sha256_bytes(pdf_bytes), size=len(pdf_bytes))
