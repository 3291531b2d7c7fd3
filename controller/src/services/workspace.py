"""
Prepare run workspaces - a temp directory, optionally holding a checkout.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from typing import Optional

from controller.src.errors import PipewrightError
from controller.src.models.step import TriggerEvent

logger = logging.getLogger(__name__)

class WorkspaceError(PipewrightError):
    """Raised when a workspace cannot be prepared."""
    pass

def clone_repository(clone_url: str, commit_sha: str, repo_path: str) -> str:
    """
    Shallow-clone a repository into repo_path and check out the commit.
    Returns repo_path.
    """
    try:
        subprocess.run(
            ["git", "clone", "--depth", "1", clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=120
        )

        if commit_sha:
            # The commit may be older than the shallow tip
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30
            )

        return repo_path
    except subprocess.TimeoutExpired:
        raise WorkspaceError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        raise WorkspaceError(f"Failed to clone repository: {e.stderr.decode(errors='replace')}")
    except OSError as e:
        raise WorkspaceError(f"Cannot run git: {e}")

def prepare_workspace(trigger: TriggerEvent, root: Optional[str] = None) -> str:
    """Create a workspace for a run, cloning the trigger's repository when it names one."""
    workspace = tempfile.mkdtemp(prefix="pipewright_", dir=root)

    if trigger.clone_url:
        # git accepts an existing empty directory as the clone target
        try:
            clone_repository(trigger.clone_url, trigger.commit_sha, workspace)
        except WorkspaceError:
            cleanup_workspace(workspace)
            raise

    return workspace

def cleanup_workspace(path: str):
    """Remove a workspace created by prepare_workspace."""
    if path and os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Removed workspace {path}")

def is_within(root: str, path: str) -> bool:
    """True when path, with symlinks resolved, stays under root."""
    root = os.path.realpath(root)
    return os.path.commonpath([root, os.path.realpath(path)]) == root
