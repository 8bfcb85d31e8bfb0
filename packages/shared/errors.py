"""
Pipeline error taxonomy.

Stage code raises these; the orchestrator turns them into persisted outcomes.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base exception for pipeline stage errors."""

    code = "PIPELINE_ERROR"
    retryable = False

    def __init__(self, message: str, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        if code:
            self.code = code
        self.details = details or {}


class PreconditionFailed(PipelineError):
    """Upstream artifact missing or stale, or job not in a runnable state."""

    code = "PRECONDITION_FAILED"
    retryable = True


class GuardrailViolation(PipelineError):
    """Generated content was rejected by the PHI / fantasy-claim filter."""

    code = "GUARDRAIL_VIOLATION"


class TransientTransportFailure(PipelineError):
    """An external call (model, renderer, notification transport) failed or timed out."""

    code = "TRANSIENT_TRANSPORT_FAILURE"
    retryable = True


class SchemaViolation(PipelineError):
    """Model or rule output failed structural validation."""

    code = "SCHEMA_VIOLATION"


class RiskCalculationError(PipelineError):
    code = "RISK_CALCULATION_FAILED"


class RankingError(PipelineError):
    code = "RANKING_FAILED"


class ConsentNotVerified(PipelineError):
    code = "CONSENT_NOT_VERIFIED"
