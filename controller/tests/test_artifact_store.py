"""Tests for artifact stores."""

import threading

import pytest

from controller.src.errors import ArtifactNotFound, DuplicateArtifact
from controller.src.services.artifact_store import (
    FilesystemArtifactStore,
    InMemoryArtifactStore,
    build_artifact_store,
)


@pytest.fixture(params=["memory", "filesystem"])
def artifact_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryArtifactStore()
    return FilesystemArtifactStore(str(tmp_path / "artifacts"))


def test_put_then_get(artifact_store):
    ref = artifact_store.put("run-1", "build-output", b"Build succeeded\n")
    assert ref
    assert artifact_store.get("run-1", "build-output") == b"Build succeeded\n"


def test_second_put_is_rejected(artifact_store):
    artifact_store.put("run-1", "publish-output", b"first")
    with pytest.raises(DuplicateArtifact) as exc_info:
        artifact_store.put("run-1", "publish-output", b"second")
    assert exc_info.value.name == "publish-output"
    assert artifact_store.get("run-1", "publish-output") == b"first"


def test_same_name_in_other_run(artifact_store):
    artifact_store.put("run-1", "build/compile.log", b"a")
    artifact_store.put("run-2", "build/compile.log", b"b")
    assert artifact_store.get("run-1", "build/compile.log") == b"a"
    assert artifact_store.get("run-2", "build/compile.log") == b"b"


def test_missing_artifact(artifact_store):
    with pytest.raises(ArtifactNotFound):
        artifact_store.get("run-1", "nope")


def test_empty_content(artifact_store):
    artifact_store.put("run-1", "empty.log", b"")
    assert artifact_store.get("run-1", "empty.log") == b""


def test_list_and_metadata(artifact_store):
    artifact_store.put("run-1", "test/unit.log", b"ok")
    artifact_store.put("run-1", "build-output", b"built")
    artifact_store.put("run-2", "other", b"x")

    assert artifact_store.list("run-1") == {"test/unit.log", "build-output"}
    assert artifact_store.list("missing-run") == set()

    artifacts = artifact_store.artifacts("run-1")
    assert [a.name for a in artifacts] == ["build-output", "test/unit.log"]
    assert artifacts[0].size == 5
    assert all(a.run_id == "run-1" for a in artifacts)


def test_concurrent_distinct_keys(artifact_store):
    errors = []

    def write(i):
        try:
            artifact_store.put("run-1", f"artifact-{i}", str(i).encode())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=write, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(artifact_store.list("run-1")) == 20
    assert artifact_store.get("run-1", "artifact-7") == b"7"


def test_concurrent_same_key_single_winner(artifact_store):
    outcomes = []
    barrier = threading.Barrier(8)

    def write(i):
        barrier.wait()
        try:
            artifact_store.put("run-1", "release.tar.gz", str(i).encode())
            outcomes.append("stored")
        except DuplicateArtifact:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=write, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("stored") == 1
    assert outcomes.count("duplicate") == 7


def test_filesystem_store_leaves_no_temp_files(tmp_path):
    store = FilesystemArtifactStore(str(tmp_path))
    store.put("run-1", "a", b"1")
    with pytest.raises(DuplicateArtifact):
        store.put("run-1", "a", b"2")
    assert sorted(p.name for p in (tmp_path / "run-1").iterdir()) == ["a"]


def test_filesystem_store_survives_reopen(tmp_path):
    FilesystemArtifactStore(str(tmp_path)).put("run-1", "build-output", b"persisted")
    reopened = FilesystemArtifactStore(str(tmp_path))
    assert reopened.get("run-1", "build-output") == b"persisted"
    with pytest.raises(DuplicateArtifact):
        reopened.put("run-1", "build-output", b"again")


def test_filesystem_store_rejects_traversal(tmp_path):
    store = FilesystemArtifactStore(str(tmp_path / "root"))
    with pytest.raises(ValueError):
        store.put("..", "x", b"")
    with pytest.raises(ValueError):
        store.put("run-1", "..", b"")
    # Slashes are encoded into a single file name
    store.put("run-1", "../escape", b"safe")
    assert not (tmp_path / "escape").exists()
    assert store.get("run-1", "../escape") == b"safe"


class _Settings:
    def __init__(self, backend, root):
        self.artifact_backend = backend
        self.artifact_root = root


def test_build_artifact_store(tmp_path):
    assert isinstance(build_artifact_store(_Settings("memory", "")), InMemoryArtifactStore)
    store = build_artifact_store(_Settings("filesystem", str(tmp_path)))
    assert isinstance(store, FilesystemArtifactStore)
