"""Shared fixtures for API tests."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.src.db.database import get_db
from api.src.main import app
from api.src.services.pipelines import get_artifact_store, get_pipelines
from api.src.services.queue import ACTIVE_STATUSES, get_run_queue
from controller.src.services.artifact_store import InMemoryArtifactStore
from controller.src.services.pipeline_parser import parse_pipeline_dict
from controller.src.services.run_store import SqlRunRepository


class FakeQueue:
    """Stands in for RunQueue without a Redis server."""

    def __init__(self):
        self.jobs = []
        self.cancelled = []
        self.statuses = {}

    async def enqueue(self, job):
        self.jobs.append(job)
        self.statuses[job.run_id] = "queued"

    async def request_cancel(self, run_id):
        if self.statuses.get(run_id) not in ACTIVE_STATUSES:
            return False
        self.cancelled.append(run_id)
        return True

    async def get_run_status(self, run_id):
        return self.statuses.get(run_id)

    async def length(self):
        return len(self.jobs)

    async def ping(self):
        return True


@pytest.fixture
def pipelines():
    return [
        parse_pipeline_dict({
            "name": "desktop-app",
            "trigger": {"events": ["push", "pull_request", "manual"], "branches": ["main", "release/*"]},
            "stages": [
                {"name": "build", "steps": [{"name": "build", "command": "dotnet build"}]},
                {"name": "publish", "steps": [{"name": "publish", "command": "dotnet publish"}]},
            ],
        }),
        parse_pipeline_dict({
            "name": "docs",
            "trigger": {"events": ["push"], "branches": ["main"]},
            "stages": [{"name": "build", "steps": [{"name": "html", "command": "make html"}]}],
        }),
    ]


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def artifact_store():
    return InMemoryArtifactStore()


@pytest.fixture
def database_path(tmp_path):
    return tmp_path / "runs.db"


@pytest.fixture
def run_repository(database_path):
    return SqlRunRepository(f"sqlite:///{database_path}", create_schema=True)


@pytest.fixture
def client(pipelines, queue, artifact_store, run_repository, database_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{database_path}")
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_pipelines] = lambda: pipelines
    app.dependency_overrides[get_run_queue] = lambda: queue
    app.dependency_overrides[get_artifact_store] = lambda: artifact_store
    app.dependency_overrides[get_db] = override_get_db

    yield TestClient(app)

    app.dependency_overrides.clear()
