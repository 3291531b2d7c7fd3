"""Tests for the Redis run queue."""

import asyncio

import pytest

from api.src.services.queue import ACTIVE_STATUSES, RunQueue
from controller.src.services.status_reporter import RUN_STATUS_HASH
from controller.src.worker import CANCEL_SET


class FakeAsyncRedis:
    """Hash and set commands the queue uses, plus the cancel script."""

    def __init__(self):
        self.hashes = {}
        self.sets = {}
        self.closed = 0

    def register_script(self, source):
        async def cancel(keys, args):
            status_hash, cancel_set = keys
            run_id, *active = args
            if self.hashes.get(status_hash, {}).get(run_id) not in active:
                return 0
            members = self.sets.setdefault(cancel_set, set())
            added = run_id not in members
            members.add(run_id)
            return int(added) + 1
        return cancel

    async def hget(self, name, key):
        return self.hashes.get(name, {}).get(key)

    async def aclose(self):
        self.closed += 1


@pytest.fixture
def redis_client():
    return FakeAsyncRedis()


@pytest.fixture
def run_queue(redis_client, monkeypatch):
    queue = RunQueue("redis://localhost:6379/0")
    monkeypatch.setattr(queue, "_client", lambda: redis_client)
    return queue


@pytest.mark.parametrize("status", ACTIVE_STATUSES)
def test_cancel_active_run(run_queue, redis_client, status):
    redis_client.hashes[RUN_STATUS_HASH] = {"run-1": status}

    assert asyncio.run(run_queue.request_cancel("run-1")) is True
    # Repeated requests are harmless
    assert asyncio.run(run_queue.request_cancel("run-1")) is True
    assert redis_client.sets[CANCEL_SET] == {"run-1"}
    assert redis_client.closed == 2


@pytest.mark.parametrize("status", ["succeeded", "failed", "cancelled", "timed_out", "rejected"])
def test_cancel_finished_run_is_not_flagged(run_queue, redis_client, status):
    redis_client.hashes[RUN_STATUS_HASH] = {"run-1": status}

    assert asyncio.run(run_queue.request_cancel("run-1")) is False
    assert CANCEL_SET not in redis_client.sets


def test_cancel_unknown_run_is_not_flagged(run_queue, redis_client):
    assert asyncio.run(run_queue.request_cancel("missing")) is False
    assert CANCEL_SET not in redis_client.sets
    assert redis_client.closed == 1


def test_get_run_status(run_queue, redis_client):
    redis_client.hashes[RUN_STATUS_HASH] = {"run-1": "queued"}

    assert asyncio.run(run_queue.get_run_status("run-1")) == "queued"
    assert asyncio.run(run_queue.get_run_status("run-2")) is None
