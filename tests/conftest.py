import asyncio
import os
from typing import Dict, List, Optional, Tuple

import fitz  # PyMuPDF
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set env before importing app components
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SUPABASE_URL"] = "https://backend.test"
os.environ["SUPABASE_KEY"] = "test-service-key"
os.environ["AI_API_KEY"] = "test-ai-key"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CONNECTIVITY_INTERVAL_SECONDS"] = "0"

from atspect.core.config import UploadSettings
from atspect.core.exceptions import AuthenticationError, FileNotFoundInStorageError
from atspect.database import Base
from atspect.main import app
from atspect.schemas.auth import CurrentUser
from atspect.services.container import ServiceContainer
from atspect.services.health import HealthReport
from atspect.services.pdf_processor import UploadedDocument
from atspect.services.resume_service import ResumeService
from atspect.services.upload_orchestrator import UploadSession, UploadSessionRegistry
from fastapi.testclient import TestClient

TEST_USER = CurrentUser(id="user-123", email="jane@example.com")
AUTH_HEADERS = {"Authorization": "Bearer valid-token"}

JOB_DESCRIPTION = (
    "We are hiring a backend engineer to design, build and operate Python services, "
    "REST APIs and data pipelines on a cloud platform."
)

RESUME_PAGES = [
    "Jane Doe\nBackend Engineer\njane@example.com\n\n"
    "Experience\nSenior Engineer at Initech 2019-2024\n"
    "Built Python and FastAPI services handling 2M requests per day.\n"
    "Led the migration of batch jobs to event driven pipelines.",
    "Skills\nPython, SQL, PostgreSQL, Docker, Kubernetes, AWS\n\n"
    "Education\nB.Sc. Computer Science, State University",
]


def make_pdf(pages: List[str]) -> bytes:
    """Build a real PDF with one text block per page."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


def make_document(pages: Optional[List[str]] = None, filename: str = "Jane Doe resume.pdf") -> UploadedDocument:
    return UploadedDocument(filename=filename, content=make_pdf(pages or RESUME_PAGES))


def sample_feedback(score: int = 78) -> Dict:
    return {
        "overall_score": score,
        "ats_score": 72,
        "categories": {
            name: {"score": score, "weight": weight, "description": name, "tips": []}
            for name, weight in (
                ("formatting", 15), ("content", 30), ("keywords", 25), ("experience", 20), ("skills", 10)
            )
        },
    }


async def no_sleep(_delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------

class FakeStorage:
    """Blob store keyed by (bucket, path)."""

    def __init__(self):
        self.blobs: Dict[Tuple[str, str], bytes] = {}
        self.upload_calls: List[Tuple[str, str]] = []
        self.deleted: List[Tuple[str, str]] = []
        self.fail_uploads: Dict[str, Exception] = {}
        self.fail_deletes = False
        self.delete_delay = 0.0
        self.delete_started: Optional[asyncio.Event] = None
        self.upload_gate: Optional[asyncio.Event] = None
        self.gate_bucket: Optional[str] = None
        self.upload_started: Optional[asyncio.Event] = None
        self.health_probe = None

    async def upload_file(self, document, path, *, bucket="resumes", **kwargs):
        self.upload_calls.append((bucket, path))
        if self.upload_gate is not None and self.gate_bucket in (None, bucket):
            if self.upload_started is not None:
                self.upload_started.set()
            await self.upload_gate.wait()
        if bucket in self.fail_uploads:
            raise self.fail_uploads[bucket]
        self.blobs[(bucket, path)] = document.content
        return path

    async def delete_file(self, path, *, bucket="resumes", **kwargs):
        if self.delete_started is not None:
            self.delete_started.set()
        if self.delete_delay:
            await asyncio.sleep(self.delete_delay)
        if self.fail_deletes:
            raise ConnectionError("storage unreachable")
        self.deleted.append((bucket, path))
        self.blobs.pop((bucket, path), None)

    async def get_file_url(self, path, *, bucket="resumes", signed=False, **kwargs):
        if (bucket, path) not in self.blobs:
            raise FileNotFoundInStorageError()
        kind = "sign" if signed else "public"
        return f"https://backend.test/storage/v1/object/{kind}/{bucket}/{path}"

    async def list_buckets(self, timeout=5.0):
        return [{"name": "resumes"}, {"name": "resume-images"}]

    def paths_for(self, user_id: str) -> List[Tuple[str, str]]:
        return [key for key in self.blobs if key[1].startswith(f"{user_id}/")]


class FakeHealth:
    def __init__(self, overall: bool = True, hang: bool = False):
        self.overall = overall
        self.hang = hang
        self.calls = 0
        self.reset_calls = 0

    async def test_all_connections(self):
        self.calls += 1
        if self.hang:
            await asyncio.sleep(3600)
        return HealthReport(database=self.overall, storage=self.overall, overall=self.overall, details={})

    def reset_circuit_breakers(self):
        self.reset_calls += 1

    def circuit_status(self):
        return {
            name: {"state": "closed", "is_open": False, "failures": 0}
            for name in ("database", "storage")
        }


class FakeAnalysis:
    time_budget = 0.0

    def __init__(self, feedback: Optional[Dict] = None, error: Optional[Exception] = None):
        self.feedback = feedback or sample_feedback()
        self.error = error
        self.calls: List[Dict] = []

    async def analyze(self, resume_text, job_title, job_description, company_name, mode=None):
        self.calls.append({
            "resume_text": resume_text,
            "job_title": job_title,
            "company_name": company_name,
            "mode": mode,
        })
        if self.error is not None:
            raise self.error
        return self.feedback


class FakeAuth:
    async def get_current_user(self, token):
        if token != "valid-token":
            raise AuthenticationError("Session expired or invalid")
        return TEST_USER


class FakeMonitor:
    def __init__(self):
        self.is_online = True
        self.listeners = set()

    def add_listener(self, callback):
        self.listeners.add(callback)
        return lambda: self.listeners.discard(callback)

    def emit(self, status):
        for callback in list(self.listeners):
            callback(status)

    def start(self, interval=None):
        pass

    async def stop(self):
        pass


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def session_factory():
    """Fresh in-memory database per test, shared across worker threads."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def health():
    return FakeHealth()


@pytest.fixture
def analysis():
    return FakeAnalysis()


@pytest.fixture
def monitor():
    return FakeMonitor()


@pytest.fixture
def resume_service(session_factory, storage):
    return ResumeService(session_factory, storage, sleep=no_sleep)


@pytest.fixture
def upload_config():
    return UploadSettings(redirect_delay=0.0)


@pytest.fixture
def make_session(storage, resume_service, health, analysis, monitor, upload_config):
    def _make(user: CurrentUser = TEST_USER, **overrides) -> UploadSession:
        options = dict(
            storage=storage,
            resumes=resume_service,
            health=health,
            analysis=analysis,
            monitor=monitor,
            config=upload_config,
        )
        options.update(overrides)
        return UploadSession(user, **options)
    return _make


@pytest.fixture
def container(storage, resume_service, health, analysis, monitor, make_session):
    return ServiceContainer(
        storage=storage,
        resumes=resume_service,
        health=health,
        monitor=monitor,
        analysis=analysis,
        auth=FakeAuth(),
        sessions=UploadSessionRegistry(make_session),
    )


@pytest.fixture(scope="function")
def client(container):
    """TestClient whose lifespan reuses the in-memory service container."""
    app.state.container = container
    with TestClient(app) as c:
        yield c
    app.state.container = None
