"""
GitHub service for webhook validation and payload parsing.
"""

import hmac
import hashlib
from typing import Optional, Dict, Any

from controller.src.models.step import TriggerEvent

PULL_REQUEST_ACTIONS = {"opened", "synchronize", "reopened"}

def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify GitHub webhook signature."""
    if not secret:
        # Skip verification if no secret configured (development)
        return True

    if not signature:
        return False

    expected = "sha256=" + hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from a GitHub push payload."""
    repo = payload.get("repository", {}) or {}
    head_commit = payload.get("head_commit", {}) or {}

    # Get branch from ref (refs/heads/main -> main)
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": (payload.get("pusher", {}) or {}).get("name", ""),
        "deleted": bool(payload.get("deleted", False)),
    }

def push_event_to_trigger(payload: Dict[str, Any]) -> Optional[TriggerEvent]:
    """Convert a push payload. Returns None for branch deletions or missing commits."""
    data = parse_webhook_payload(payload)
    if data["deleted"] or not data["commit_sha"] or not data["branch"]:
        return None

    return TriggerEvent(
        event_type="push",
        branch=data["branch"],
        commit_sha=data["commit_sha"],
        actor=data["pusher"],
        repository=data["repo_full_name"] or None,
        clone_url=data["clone_url"] or None,
    )

def pull_request_event_to_trigger(payload: Dict[str, Any]) -> Optional[TriggerEvent]:
    """Convert a pull_request payload. Only opened/synchronize/reopened trigger runs."""
    if payload.get("action") not in PULL_REQUEST_ACTIONS:
        return None

    pr = payload.get("pull_request", {}) or {}
    head = pr.get("head", {}) or {}
    head_repo = head.get("repo", {}) or {}
    base_repo = payload.get("repository", {}) or {}

    if not head.get("sha") or not head.get("ref"):
        return None

    return TriggerEvent(
        event_type="pull_request",
        branch=head["ref"],
        commit_sha=head["sha"],
        actor=(payload.get("sender", {}) or {}).get("login", ""),
        repository=base_repo.get("full_name") or None,
        clone_url=head_repo.get("clone_url") or base_repo.get("clone_url") or None,
    )
