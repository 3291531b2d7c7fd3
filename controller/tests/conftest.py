"""Shared fixtures for controller tests."""

import pytest

from controller.src.models.step import TriggerEvent
from controller.src.services.artifact_store import InMemoryArtifactStore
from controller.src.services.runners import CommandOutcome
from controller.src.services.status_reporter import MemorySink, StatusReporter


class ScriptedRunner:
    """Runner returning canned outcomes keyed by 'stage/step'. Unknown keys succeed."""

    def __init__(self, outcomes=None, hook=None):
        self.outcomes = outcomes or {}
        self.hook = hook
        self.calls = []
        self.invocations = []

    def run(self, invocation):
        key = f"{invocation.labels['stage']}/{invocation.labels['step']}"
        self.calls.append(key)
        self.invocations.append(invocation)
        if self.hook:
            self.hook(key, invocation)
        return self.outcomes.get(
            key, CommandOutcome(exit_code=0, stdout=f"{key} ok\n".encode())
        )


@pytest.fixture
def store():
    return InMemoryArtifactStore()


@pytest.fixture
def scripted_runner():
    return ScriptedRunner


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def reporter(sink):
    return StatusReporter([sink])


@pytest.fixture
def push_event():
    return TriggerEvent(
        event_type="push",
        branch="main",
        commit_sha="abc123def456",
        actor="octocat",
    )


@pytest.fixture
def dotnet_pipeline_dict():
    return {
        "name": "desktop-app",
        "trigger": {"events": ["push"], "branches": ["main"]},
        "stages": [
            {"name": "restore", "steps": [{"name": "restore", "command": "dotnet restore"}]},
            {"name": "build", "steps": [{"name": "build", "command": "dotnet build"}]},
            {
                "name": "test",
                "steps": [
                    {"name": "unit", "command": "dotnet test --filter Unit"},
                    {"name": "integration", "command": "dotnet test --filter Integration"},
                    {"name": "ui", "command": "dotnet test --filter UI"},
                ],
            },
            {"name": "publish", "steps": [{"name": "publish", "command": "dotnet publish -o out"}]},
        ],
    }
