"""
Write-once artifact storage keyed by (run_id, name).
"""

import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Dict, List, Protocol, Set, Tuple
from urllib.parse import quote, unquote

from controller.src.config import Settings
from controller.src.errors import ArtifactNotFound, DuplicateArtifact
from controller.src.models.step import Artifact, utcnow

logger = logging.getLogger(__name__)

class ArtifactStore(Protocol):
    """Storage backend for run artifacts."""

    def put(self, run_id: str, name: str, content: bytes) -> str:
        """Store content and return its content ref. Raises DuplicateArtifact."""

    def get(self, run_id: str, name: str) -> bytes:
        """Return stored content. Raises ArtifactNotFound."""

    def list(self, run_id: str) -> Set[str]:
        """Return the artifact names stored for a run."""

    def artifacts(self, run_id: str) -> List[Artifact]:
        """Return artifact metadata for a run, ordered by name."""

class InMemoryArtifactStore:
    """Keep artifacts in process memory. Useful for tests and local runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Dict[Tuple[str, str], Tuple[bytes, Artifact]] = {}

    def put(self, run_id: str, name: str, content: bytes) -> str:
        key = (run_id, name)
        ref = f"memory://{run_id}/{quote(name, safe='')}"
        with self._lock:
            if key in self._items:
                raise DuplicateArtifact(run_id, name)
            artifact = Artifact(
                run_id=run_id,
                name=name,
                content_ref=ref,
                size=len(content),
                created_at=utcnow(),
            )
            self._items[key] = (bytes(content), artifact)
        logger.debug(f"Stored artifact {name} for run {run_id}")
        return ref

    def get(self, run_id: str, name: str) -> bytes:
        with self._lock:
            item = self._items.get((run_id, name))
        if item is None:
            raise ArtifactNotFound(run_id, name)
        return item[0]

    def list(self, run_id: str) -> Set[str]:
        with self._lock:
            return {name for (rid, name) in self._items if rid == run_id}

    def artifacts(self, run_id: str) -> List[Artifact]:
        with self._lock:
            found = [a for (rid, _), (_, a) in self._items.items() if rid == run_id]
        return sorted(found, key=lambda a: a.name)

class FilesystemArtifactStore:
    """
    Store artifacts as files under ``root/<run_id>/``.

    Content is written to a temp file in the run directory and hard-linked
    to its final name, so a key is either absent or fully written.
    """

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def _run_dir(self, run_id: str) -> str:
        safe_run = quote(run_id, safe="")
        if safe_run in ("", ".", ".."):
            raise ValueError(f"Invalid run id: {run_id!r}")
        return os.path.join(self.root, safe_run)

    def _path(self, run_id: str, name: str) -> str:
        safe_name = quote(name, safe="")
        if safe_name in ("", ".", "..") or safe_name.startswith(".tmp-"):
            raise ValueError(f"Invalid artifact name: {name!r}")
        return os.path.join(self._run_dir(run_id), safe_name)

    def put(self, run_id: str, name: str, content: bytes) -> str:
        path = self._path(run_id, name)
        run_dir = os.path.dirname(path)
        os.makedirs(run_dir, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=run_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                raise DuplicateArtifact(run_id, name)
        finally:
            os.unlink(tmp_path)

        logger.debug(f"Stored artifact {name} for run {run_id} at {path}")
        return f"file://{path}"

    def get(self, run_id: str, name: str) -> bytes:
        path = self._path(run_id, name)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise ArtifactNotFound(run_id, name)

    def list(self, run_id: str) -> Set[str]:
        run_dir = self._run_dir(run_id)
        if not os.path.isdir(run_dir):
            return set()
        return {
            unquote(entry)
            for entry in os.listdir(run_dir)
            if not entry.startswith(".tmp-")
        }

    def artifacts(self, run_id: str) -> List[Artifact]:
        found = []
        for name in sorted(self.list(run_id)):
            path = self._path(run_id, name)
            stat = os.stat(path)
            found.append(
                Artifact(
                    run_id=run_id,
                    name=name,
                    content_ref=f"file://{path}",
                    size=stat.st_size,
                    created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return found

def build_artifact_store(settings: Settings) -> ArtifactStore:
    """Create the artifact store selected by settings."""
    if settings.artifact_backend == "memory":
        return InMemoryArtifactStore()
    return FilesystemArtifactStore(settings.artifact_root)
