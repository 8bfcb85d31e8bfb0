import os
import tempfile

# Must be set before packages.db.database / packages.shared.storage are imported.
_TMP_ROOT = tempfile.mkdtemp(prefix="clinreport-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_ROOT, 'test.db')}"
os.environ["DATA_DIR"] = os.path.join(_TMP_ROOT, "data")
os.environ.pop("ANTHROPIC_API_KEY", None)
os.environ.pop("AUTH_ENFORCEMENT", None)

import pytest  # noqa: E402

from apps.worker.jobs import create_processing_job  # noqa: E402
from apps.worker.lib.retry_policy import no_sleep  # noqa: E402
from apps.worker.pipeline_context import PipelineDeps  # noqa: E402
from apps.worker.pipeline_persistence import ArtifactStore  # noqa: E402
from packages.db.database import engine  # noqa: E402
from packages.db.models import Assessment, Base  # noqa: E402
from packages.shared.config import PipelineSettings  # noqa: E402
from tests.support import STANDARD_ANSWERS, FakeEvaluator, FakeTransport  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def settings():
    return PipelineSettings(delivery_backoff_seconds=0.0, safety_timeout_seconds=5.0)


@pytest.fixture
def evaluator():
    return FakeEvaluator()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def deps(settings, evaluator, transport):
    return PipelineDeps(
        store=ArtifactStore(),
        settings=settings,
        evaluator=evaluator,
        transport=transport,
        sleep=no_sleep,
    )


@pytest.fixture
def make_assessment(deps):
    def _make(answers=None, patient_ref="patient-ref-1"):
        return deps.store.add(
            Assessment,
            patient_ref=patient_ref,
            answers_json=dict(STANDARD_ANSWERS if answers is None else answers),
        )

    return _make


@pytest.fixture
def make_job(deps, make_assessment):
    def _make(answers=None, program_tier="tier-1-essential", correlation_id=None, patient_ref="patient-ref-1"):
        assessment = make_assessment(answers, patient_ref=patient_ref)
        job, _ = create_processing_job(
            assessment.id, correlation_id=correlation_id, program_tier=program_tier, deps=deps
        )
        return job

    return _make
