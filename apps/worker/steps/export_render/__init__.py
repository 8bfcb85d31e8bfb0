from .report_pdf import RENDERER_VERSION, RenderedPdf, ReportlabRenderer, generate_report_pdf

__all__ = [
    "RENDERER_VERSION",
    "RenderedPdf",
    "ReportlabRenderer",
    "generate_report_pdf",
]
