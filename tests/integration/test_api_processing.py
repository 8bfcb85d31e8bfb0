from __future__ import annotations

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from apps.api.main import app
from apps.api.routes.processing import get_pipeline_deps
from apps.worker.lib.prompt_registry import DEFAULT_PROMPTS, SECTION_PROMPT_IDS
from apps.worker.steps.export_render.report_pdf import ReportlabRenderer
from packages.shared.models.enums import Stage
from tests.support import STANDARD_ANSWERS, advance_until


@pytest.fixture
def client(deps):
    app.dependency_overrides[get_pipeline_deps] = lambda: deps
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def job_id(client, make_assessment):
    assessment = make_assessment()
    resp = client.post(
        "/processing/jobs",
        json={"assessment_id": assessment.id, "program_tier": "tier-1-essential"},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["is_new"] is True
    return body["id"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert "X-Request-Id" in resp.headers


def test_create_job_is_idempotent(client, make_assessment):
    assessment = make_assessment()
    first = client.post("/processing/jobs", json={"assessment_id": assessment.id}).json()
    second = client.post("/processing/jobs", json={"assessment_id": assessment.id}).json()
    assert first["id"] == second["id"]
    assert second["is_new"] is False


def test_create_job_for_unknown_assessment_is_404(client):
    resp = client.post("/processing/jobs", json={"assessment_id": "missing"})
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "ASSESSMENT_MISSING"


def test_stage_endpoints_and_preconditions(client, job_id):
    resp = client.post(f"/processing/jobs/{job_id}/ranking")
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "RISK_BUNDLE_MISSING"

    risk = client.post(f"/processing/jobs/{job_id}/risk").json()
    assert risk["is_new_bundle"] is True
    assert client.post(f"/processing/jobs/{job_id}/risk").json()["is_new_bundle"] is False

    assert client.post(f"/processing/jobs/{job_id}/ranking").json()["is_new"] is True
    content = client.post(f"/processing/jobs/{job_id}/content").json()
    assert len(content["sections"]) == 4
    results = client.post(f"/processing/jobs/{job_id}/results", json={"algorithm_version": "v1.0.0"}).json()
    assert results["result_id"] == content["sections_hash"]

    assert client.post(f"/processing/jobs/{job_id}/validation").json()["result"] == "PASS"
    assert client.post(f"/processing/jobs/{job_id}/safety").json()["action"] == "PASS"
    assert client.post(f"/processing/jobs/{job_id}/pdf").json()["is_new"] is True

    resp = client.post(f"/processing/jobs/{job_id}/delivery", json={})
    assert resp.status_code == 409
    assert "JOB_NOT_COMPLETED" in resp.json()["detail"]["details"]["reasons"]


def test_run_and_download(client, job_id):
    resp = client.post(f"/processing/jobs/{job_id}/run")
    assert resp.status_code == 200
    outcomes = resp.json()
    assert [o["stage"] for o in outcomes][-1] == "delivery"
    assert all(o["success"] for o in outcomes)

    job = client.get(f"/processing/jobs/{job_id}").json()
    assert job["status"] == "completed"
    assert job["delivery_status"] == "DELIVERED"

    artifacts = client.get(f"/processing/jobs/{job_id}/artifacts").json()
    assert artifacts["missing_for_delivery"] == []
    counts = {a["artifact_type"]: a["count"] for a in artifacts["artifacts"]}
    assert counts["report_section"] == 4
    assert counts["notification"] == 1

    only_pdf = client.get(f"/processing/jobs/{job_id}/artifacts", params={"artifact_type": "pdf"}).json()
    assert [a["artifact_type"] for a in only_pdf["artifacts"]] == ["pdf"]

    pdf = client.get(f"/processing/jobs/{job_id}/pdf")
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")


def test_invalid_artifact_type(client, job_id):
    resp = client.get(f"/processing/jobs/{job_id}/artifacts", params={"artifact_type": "exe"})
    assert resp.status_code == 400


def test_unknown_job_is_404(client):
    assert client.get("/processing/jobs/missing").status_code == 404
    assert client.post("/processing/jobs/missing/advance").status_code == 404
    assert client.post("/processing/jobs/missing/risk").status_code == 404


def test_failed_stage_returns_outcome_body(client, make_assessment):
    answers = dict(STANDARD_ANSWERS)
    del answers["stress_q4"]
    assessment = make_assessment(answers)
    job_id = client.post("/processing/jobs", json={"assessment_id": assessment.id}).json()["id"]
    resp = client.post(f"/processing/jobs/{job_id}/risk")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "MISSING_ANSWER"
    assert body["stage"] == "risk"

    job = client.get(f"/processing/jobs/{job_id}").json()
    assert job["status"] == "failed"
    assert job["error_code"] == "MISSING_ANSWER"
    assert [j["id"] for j in client.get("/processing/review-queue").json()] == [job_id]


def test_guardrail_violation_is_422(client, deps, make_assessment):
    echoing = [
        replace(p, version="v9.0.0", template="Notes: {{answer.notes}}")
        for p in DEFAULT_PROMPTS
        if p.prompt_id in SECTION_PROMPT_IDS.values()
    ]
    deps.prompts = deps.prompts.with_templates(*echoing)
    deps.settings = replace(deps.settings, content_prompt_version="v9.0.0")
    assessment = make_assessment({**STANDARD_ANSWERS, "notes": "my neighbour Mrs Alvarez"})
    job_id = client.post("/processing/jobs", json={"assessment_id": assessment.id}).json()["id"]
    client.post(f"/processing/jobs/{job_id}/risk")
    client.post(f"/processing/jobs/{job_id}/ranking")
    resp = client.post(f"/processing/jobs/{job_id}/content")
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "GUARDRAIL_VIOLATION"

    job = client.get(f"/processing/jobs/{job_id}").json()
    assert job["status"] == "failed"
    assert job["error_code"] == "GUARDRAIL_VIOLATION"


def test_precondition_leaves_job_untouched(client, job_id):
    assert client.post(f"/processing/jobs/{job_id}/content").status_code == 409
    job = client.get(f"/processing/jobs/{job_id}").json()
    assert job["status"] == "pending"
    assert job["error_code"] is None


class _BrokenRenderer(ReportlabRenderer):
    def render(self, job_id, sections, inputs_hash):
        raise RuntimeError("font cache corrupted")


def test_unexpected_stage_error_fails_job(client, deps, job_id):
    advance_until(deps, job_id, Stage.PDF)
    deps.renderer = _BrokenRenderer()
    resp = client.post(f"/processing/jobs/{job_id}/pdf")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "INTERNAL_ERROR"

    job = client.get(f"/processing/jobs/{job_id}").json()
    assert job["status"] == "failed"
    assert job["error_code"] == "INTERNAL_ERROR"


def test_review_and_queue(client, deps, job_id):
    deps.evaluator = None
    client.post(f"/processing/jobs/{job_id}/run")
    queue = client.get("/processing/review-queue").json()
    assert [j["id"] for j in queue] == [job_id]

    resp = client.post(f"/processing/jobs/{job_id}/review", json={"approved": True, "reviewer_role": "patient"})
    assert resp.status_code == 403

    resp = client.post(
        f"/processing/jobs/{job_id}/review",
        json={"approved": True},
        headers={"X-User-Id": "dr-1", "X-User-Role": "clinician"},
    )
    assert resp.status_code == 200
    assert resp.json()["review_status"] == "approved"
    assert client.get("/processing/review-queue").json() == []

    outcome = client.post(f"/processing/jobs/{job_id}/advance").json()
    assert outcome["stage"] == "delivery"
    assert outcome["success"] is True


def test_notification_callback(client, job_id):
    client.post(f"/processing/jobs/{job_id}/run")
    notification_id = client.get(f"/processing/jobs/{job_id}/artifacts").json()["artifacts"][-1]["ids"][0]
    resp = client.post(f"/processing/notifications/{notification_id}/callback", json={"status": "delivered"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"

    assert client.post("/processing/notifications/missing/callback", json={"status": "sent"}).status_code == 404


def test_enforced_auth(client, job_id, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AUTH_ENFORCEMENT", "true")
    assert client.get(f"/processing/jobs/{job_id}").status_code == 401
    resp = client.get(f"/processing/jobs/{job_id}", headers={"X-User-Id": "p1", "X-User-Role": "patient"})
    assert resp.status_code == 403
    resp = client.get(f"/processing/jobs/{job_id}", headers={"X-User-Id": "a1", "X-User-Role": "admin"})
    assert resp.status_code == 200
