"""
Redis queue service for pipeline runs.
"""

import redis.asyncio as redis
from typing import Optional

from api.src.config import get_settings
from controller.src.models.step import PipelineJob
from controller.src.services.status_reporter import RUN_STATUS_HASH
from controller.src.worker import CANCEL_SET, PIPELINE_QUEUE

settings = get_settings()

ACTIVE_STATUSES = ("queued", "pending", "running")

# Flags the run only while its live status is still active
CANCEL_SCRIPT = """
local status = redis.call('hget', KEYS[1], ARGV[1])
for i = 2, #ARGV do
    if status == ARGV[i] then
        return redis.call('sadd', KEYS[2], ARGV[1]) + 1
    end
end
return 0
"""

class RunQueue:
    def __init__(self, redis_url: str):
        self.redis_url = redis_url

    def _client(self) -> redis.Redis:
        return redis.from_url(self.redis_url, decode_responses=True)

    async def enqueue(self, job: PipelineJob):
        """Add a run to the processing queue."""
        client = self._client()
        try:
            await client.lpush(PIPELINE_QUEUE, job.model_dump_json())
            await client.hset(RUN_STATUS_HASH, job.run_id, "queued")
        finally:
            await client.aclose()

    async def request_cancel(self, run_id: str) -> bool:
        """
        Ask the worker running this run to stop at the next step boundary.
        Returns False when the run is unknown or already finished.
        """
        client = self._client()
        try:
            script = client.register_script(CANCEL_SCRIPT)
            return bool(await script(keys=[RUN_STATUS_HASH, CANCEL_SET], args=[run_id, *ACTIVE_STATUSES]))
        finally:
            await client.aclose()

    async def get_run_status(self, run_id: str) -> Optional[str]:
        """Get live run status from Redis."""
        client = self._client()
        try:
            return await client.hget(RUN_STATUS_HASH, run_id)
        finally:
            await client.aclose()

    async def length(self) -> int:
        """Get number of runs waiting in the queue."""
        client = self._client()
        try:
            return await client.llen(PIPELINE_QUEUE)
        finally:
            await client.aclose()

    async def ping(self) -> bool:
        client = self._client()
        try:
            return await client.ping()
        finally:
            await client.aclose()

def get_run_queue() -> RunQueue:
    return RunQueue(settings.redis_url)
