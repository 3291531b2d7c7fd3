"""Tests for webhook handling."""

import hashlib
import hmac
import json

import pytest
from api.src.config import get_settings
from api.src.services.github import (
    parse_webhook_payload,
    pull_request_event_to_trigger,
    push_event_to_trigger,
    verify_signature,
)

def push_payload(ref="refs/heads/main", sha="abc123def456", **extra):
    payload = {
        "ref": ref,
        "repository": {
            "name": "test-repo",
            "full_name": "user/test-repo",
            "clone_url": "https://github.com/user/test-repo.git",
        },
        "head_commit": {
            "id": sha,
            "message": "Test commit",
        },
        "pusher": {
            "name": "testuser",
        },
    }
    payload.update(extra)
    return payload

def test_parse_push_payload():
    result = parse_webhook_payload(push_payload())

    assert result["repo_name"] == "test-repo"
    assert result["repo_full_name"] == "user/test-repo"
    assert result["branch"] == "main"
    assert result["commit_sha"] == "abc123def456"
    assert result["pusher"] == "testuser"
    assert result["deleted"] is False

def test_parse_payload_with_after():
    """Test fallback to 'after' field for commit SHA."""
    payload = {
        "ref": "refs/heads/feature",
        "after": "xyz789",
        "repository": {
            "name": "repo",
            "full_name": "user/repo",
            "clone_url": "https://github.com/user/repo.git",
        },
        "head_commit": {},
        "pusher": {"name": "user"},
    }

    result = parse_webhook_payload(payload)
    assert result["commit_sha"] == "xyz789"
    assert result["branch"] == "feature"

def test_verify_signature_without_secret():
    """When no secret is configured, verification should pass."""
    assert verify_signature(b"payload", "sha256=anything", "") is True

def test_verify_signature_with_secret():
    digest = hmac.new(b"s3cret", b"payload", hashlib.sha256).hexdigest()
    assert verify_signature(b"payload", f"sha256={digest}", "s3cret") is True
    assert verify_signature(b"payload", "sha256=deadbeef", "s3cret") is False
    assert verify_signature(b"payload", None, "s3cret") is False

def test_push_to_trigger():
    event = push_event_to_trigger(push_payload(ref="refs/heads/release/1.0"))

    assert event.event_type == "push"
    assert event.branch == "release/1.0"
    assert event.actor == "testuser"
    assert event.repository == "user/test-repo"
    assert event.clone_url == "https://github.com/user/test-repo.git"

def test_branch_deletion_is_not_a_trigger():
    assert push_event_to_trigger(push_payload(deleted=True)) is None
    assert push_event_to_trigger(push_payload(sha="")) is None

def test_pull_request_to_trigger():
    payload = {
        "action": "synchronize",
        "pull_request": {
            "head": {
                "ref": "feature/login",
                "sha": "fedcba",
                "repo": {"clone_url": "https://github.com/fork/test-repo.git"},
            },
        },
        "repository": {"full_name": "user/test-repo"},
        "sender": {"login": "contributor"},
    }

    event = pull_request_event_to_trigger(payload)
    assert event.event_type == "pull_request"
    assert event.branch == "feature/login"
    assert event.commit_sha == "fedcba"
    assert event.actor == "contributor"
    assert event.repository == "user/test-repo"
    assert event.clone_url == "https://github.com/fork/test-repo.git"

    assert pull_request_event_to_trigger({**payload, "action": "closed"}) is None

def post_event(client, event, payload, headers=None):
    return client.post(
        "/api/webhooks/github",
        content=json.dumps(payload),
        headers={"X-GitHub-Event": event, "Content-Type": "application/json", **(headers or {})},
    )

def test_webhook_queues_matching_pipelines(client, queue):
    response = post_event(client, "push", push_payload())

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"
    assert [r["pipeline"] for r in body["runs"]] == ["desktop-app", "docs"]
    assert [j.pipeline for j in queue.jobs] == ["desktop-app", "docs"]
    assert queue.jobs[0].trigger.commit_sha == "abc123def456"
    assert queue.jobs[0].run_id != queue.jobs[1].run_id

def test_webhook_skips_unmatched_branch(client, queue):
    response = post_event(client, "push", push_payload(ref="refs/heads/feature/x"))

    assert response.status_code == 200
    assert response.json()["status"] == "skipped"
    assert queue.jobs == []

def test_webhook_pull_request(client, queue):
    payload = {
        "action": "opened",
        "pull_request": {"head": {"ref": "release/2.0", "sha": "123abc", "repo": {}}},
        "repository": {"full_name": "user/test-repo", "clone_url": "https://github.com/user/test-repo.git"},
        "sender": {"login": "contributor"},
    }
    response = post_event(client, "pull_request", payload)

    assert response.json()["status"] == "queued"
    assert [j.pipeline for j in queue.jobs] == ["desktop-app"]

def test_webhook_ping_and_unhandled(client, queue):
    assert post_event(client, "ping", {"zen": "hi"}).json()["status"] == "pong"
    assert post_event(client, "issues", {}).json()["status"] == "ignored"
    assert queue.jobs == []

def test_webhook_rejects_bad_signature(client, queue, monkeypatch):
    monkeypatch.setattr(get_settings(), "github_webhook_secret", "s3cret")

    response = post_event(client, "push", push_payload(), {"X-Hub-Signature-256": "sha256=bad"})

    assert response.status_code == 401
    assert queue.jobs == []

def test_webhook_accepts_good_signature(client, queue, monkeypatch):
    monkeypatch.setattr(get_settings(), "github_webhook_secret", "s3cret")
    body = json.dumps(push_payload()).encode()
    digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    response = client.post(
        "/api/webhooks/github",
        content=body,
        headers={"X-GitHub-Event": "push", "X-Hub-Signature-256": f"sha256={digest}"},
    )

    assert response.status_code == 200
    assert len(queue.jobs) == 2

def test_webhook_invalid_json(client):
    response = client.post(
        "/api/webhooks/github",
        content=b"not json",
        headers={"X-GitHub-Event": "push"},
    )
    assert response.status_code == 400
