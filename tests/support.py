"""
Shared constants and fakes for the test suites.

Imported by conftest after the environment has been pointed at throwaway
storage; importing this module first would bind the real DATABASE_URL.
"""
import threading

from apps.worker.lib.notifications import OutgoingNotification
from apps.worker.steps.export_render.report_pdf import ReportlabRenderer
from packages.shared.errors import TransientTransportFailure
from packages.shared.models.enums import NotificationStatus

STANDARD_ANSWERS = {
    "stress_q1": 3,
    "stress_q2": 3,
    "stress_q3": 3,
    "stress_q4": 3,
    "sleep_q1": 2,
    "sleep_q2": 2,
    "social_q1": 1,
    "social_q2": 1,
}

PASS_OUTPUT = {
    "summary": "Content is consistent with the risk profile.",
    "severity": "none",
    "action": "PASS",
    "safety_score": 95,
    "findings": [],
}


class FakeEvaluator:
    """Returns queued outputs in order, repeating the last; a queued exception is raised instead."""

    def __init__(self, outputs=None, model_config=None):
        self.outputs = list(outputs) if outputs is not None else [PASS_OUTPUT]
        self.model_config = model_config or {"provider": "fake", "model": "fake-safety"}
        self.prompts = []
        self._lock = threading.Lock()

    def evaluate(self, prompt, schema):
        with self._lock:
            self.prompts.append(prompt)
            out = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(out, BaseException):
            raise out
        return out


class HangingEvaluator:
    model_config = {"provider": "fake", "model": "hanging"}

    def __init__(self):
        self.release = threading.Event()
        self.calls = 0

    def evaluate(self, prompt, schema):
        self.calls += 1
        self.release.wait(5)
        return PASS_OUTPUT


class FakeTransport:
    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.sent: list[OutgoingNotification] = []
        self._lock = threading.Lock()

    def send(self, notification):
        with self._lock:
            self.sent.append(notification)
            out = self.outcomes.pop(0) if self.outcomes else NotificationStatus.SENT
        if isinstance(out, BaseException):
            raise out
        return out


class FlakyRenderer(ReportlabRenderer):
    """Fails the first *failures* renders with a transient error."""

    def __init__(self, failures=1):
        self.failures = failures
        self.calls = 0

    def render(self, job_id, sections, inputs_hash):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientTransportFailure("renderer unavailable", code="RENDERER_UNAVAILABLE")
        return super().render(job_id, sections, inputs_hash)


def advance_until(deps, job_id, stage, max_steps=10):
    """Advance a job with the orchestrator until it sits at *stage*."""
    from apps.worker.pipeline import PipelineOrchestrator

    orchestrator = PipelineOrchestrator(deps)
    for _ in range(max_steps):
        job = deps.store.get_job(job_id)
        if job.stage == stage.value:
            return job
        outcome = orchestrator.advance(job_id)
        assert outcome.success, outcome
    raise AssertionError(f"job {job_id} never reached {stage.value}")
