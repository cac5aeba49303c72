"""Pytest configuration and fixtures."""

import base64
import copy
import io
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from PIL import Image
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

import genjobs.models  # noqa: F401  (register tables)
from genjobs.config import Settings
from genjobs.database import Base
from genjobs.engine import build_engine
from genjobs.errors import DispatchError
from genjobs.models.job import Job, utcnow
from genjobs.schemas.providers import Candidate, GenerateResult, ScoreResult
from genjobs.services.blob_store import LocalBlobStore
from genjobs.services.dispatcher import Dispatcher
from genjobs.services.job_store import JobStore
from genjobs.services.llm_client import PlannerResponse, ToolCall
from genjobs.services.providers import FALLBACK, PRIMARY, GenerationProvider, ProviderSet


def make_png(width: int = 64, height: int = 48, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def backdate(db, job_id: str, seconds: float) -> None:
    """Pretend a job has not been touched for ``seconds``."""
    db.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(updated_at=utcnow() - timedelta(seconds=seconds))
        .execution_options(synchronize_session=False)
    )
    db.commit()


class FakeProvider(GenerationProvider):
    """Scripted provider that records every call."""

    def __init__(self, name: str):
        self.name = name
        self.calls: List[tuple] = []
        self.score_script: List[Any] = []
        self.generate_error: Optional[Exception] = None
        self.score_error: Optional[Exception] = None
        self.on_analyze = None
        self.answers: Dict[str, Any] = {
            "subject_region": {"box": [100, 250, 900, 750]},
            "outfit_completeness": {"is_outfit_complete": True, "missing_items": []},
            "brand_analysis": {"brand_name": "Acme", "summary": "Bold primaries"},
            "image_critique": {"is_good_enough": True, "critique": "Strong"},
            "artisan_prompt": {"prompt": "a studio portrait, soft light"},
        }

    def generate(self, input_assets, params):
        self.calls.append(("generate", dict(input_assets), dict(params)))
        if self.generate_error is not None:
            raise self.generate_error
        payload = base64.b64encode(make_png(80, 60)).decode()
        return GenerateResult(candidates=[
            Candidate(base64=payload, seed=1, description=f"{self.name} candidate 1"),
            Candidate(base64=payload, seed=2, description=f"{self.name} candidate 2"),
        ])

    def analyze(self, image_url, question):
        self.calls.append(("analyze", image_url, question["name"]))
        if self.on_analyze is not None:
            self.on_analyze()
        answer = self.answers[question["name"]]
        if isinstance(answer, Exception):
            raise answer
        return copy.deepcopy(answer)

    def score(self, original_url, reference_url, candidates):
        self.calls.append(("score", original_url, list(candidates)))
        if self.score_error is not None:
            raise self.score_error
        if self.score_script:
            return self.score_script.pop(0)
        return ScoreResult(action="select", best_index=1, reasoning="Fits well")

    def count(self, kind: str) -> int:
        return len([c for c in self.calls if c[0] == kind])


class FakePlanner:
    """Planner that replays scripted responses and records each request."""

    def __init__(self):
        self.script: List[Any] = []
        self.requests: List[Dict[str, Any]] = []

    def say(self, name: str, call_id: Optional[str] = None, **arguments) -> None:
        call_id = call_id or f"call_{len(self.script) + len(self.requests) + 1}"
        self.script.append(PlannerResponse(tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)]))

    def plan(self, history, system_prompt, tools):
        self.requests.append({
            "history": copy.deepcopy(history),
            "tools": [tool["function"]["name"] for tool in tools],
        })
        if not self.script:
            raise AssertionError("planner called more often than scripted")
        response = self.script.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RecordingDispatcher(Dispatcher):
    """Queues invocations so tests decide when they run."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.queue: List[tuple] = []
        self.fail = False

    def dispatch(self, job_id, extra_inputs=None):
        if self.fail:
            raise DispatchError(f"dispatch of {job_id} refused")
        self.calls.append((job_id, extra_inputs))
        self.queue.append((job_id, extra_inputs))

    def dispatched(self, job_id: str) -> int:
        return len([c for c in self.calls if c[0] == job_id])

    def drain(self, invoke, limit: int = 100) -> int:
        """Run queued invocations, including the ones they enqueue."""
        count = 0
        while self.queue:
            job_id, extra_inputs = self.queue.pop(0)
            invoke(job_id, extra_inputs)
            count += 1
            if count >= limit:
                raise AssertionError("invocation chain did not settle")
        return count


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """A throwaway SQLite database per test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'jobs.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    yield TestingSessionLocal

    engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a test database session for each test."""
    db = session_factory()

    yield db

    db.close()


@pytest.fixture
def store(test_db):
    return JobStore(test_db)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        MAX_QUALITY_RETRIES=3,
        COMPLETENESS_FAILURE_POLICY="skip",
        MAX_ASSET_EDGE=512,
        MAX_WATCHDOG_RETRIES=3,
        WATCHDOG_LOCK_TTL=60,
        PROVIDER_TIMEOUT=5.0,
        PLANNER_TIMEOUT=5.0,
        STALE_COMPOSITE_SECONDS=60,
        STALE_AGENT_SECONDS=60,
        STALE_REFRAME_SECONDS=60,
        STALE_BATCH_REFINE_SECONDS=60,
    )


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def primary():
    return FakeProvider(PRIMARY)


@pytest.fixture
def fallback():
    return FakeProvider(FALLBACK)


@pytest.fixture
def planner():
    return FakePlanner()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def engine(session_factory, blobs, primary, fallback, planner, dispatcher, test_settings):
    return build_engine(
        session_factory=session_factory,
        blobs=blobs,
        providers=ProviderSet({PRIMARY: primary, FALLBACK: fallback}),
        planner_client=planner,
        dispatcher=dispatcher,
        config=test_settings,
    )


@pytest.fixture
def composite_inputs(blobs):
    """Subject and reference images already in blob storage."""
    return {
        "subject_image_url": blobs.write("inputs/subject.png", make_png(400, 600)),
        "reference_image_url": blobs.write("inputs/reference.png", make_png(2048, 1024, (20, 20, 200))),
        "garment_type": "upper_body",
        "prompt": "linen shirt",
    }
