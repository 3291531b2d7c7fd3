"""
Queue worker - pulls runs from Redis and executes them.
"""

import asyncio
import logging
from typing import List, Optional

import redis

from controller.src.config import Settings, get_settings
from controller.src.errors import TriggerRejected
from controller.src.models.step import PipelineJob, RunRecord
from controller.src.services.artifact_store import build_artifact_store
from controller.src.services.coordinator import RedisRunGuard, RunCoordinator
from controller.src.services.executor import CancellationToken
from controller.src.services.pipeline_parser import parse_pipelines_file
from controller.src.services.run_store import SqlRunRepository
from controller.src.services.runners import build_runner
from controller.src.services.status_reporter import (
    GitHubStatusSink,
    LoggingSink,
    RedisSink,
    RUN_STATUS_HASH,
    StatusReporter,
    StatusSink,
)
from controller.src.services.workspace import WorkspaceError, cleanup_workspace, prepare_workspace

logger = logging.getLogger(__name__)

PIPELINE_QUEUE = "pipewright:jobs"
CANCEL_SET = "pipewright:cancel"

def get_redis_client(settings: Settings) -> redis.Redis:
    return redis.from_url(settings.redis_url, decode_responses=True)

def build_coordinator(settings: Settings, client: redis.Redis) -> RunCoordinator:
    """Wire the coordinator from settings."""
    return RunCoordinator(
        pipelines=parse_pipelines_file(settings.pipelines_file),
        store=build_artifact_store(settings),
        runner=build_runner(settings),
        reporter=StatusReporter([LoggingSink(), RedisSink(client)]),
        runs=SqlRunRepository(settings.database_url, create_schema=True),
        guard=RedisRunGuard(client, ttl=settings.dedup_lock_ttl),
        workspace_root=settings.workspace_root,
        inherit_env=settings.executor_backend == "local",
    )

def run_sinks(job: PipelineJob, settings: Settings) -> List[StatusSink]:
    """Per-run sinks. Commit statuses are posted when a GitHub token is configured."""
    if settings.github_token and job.trigger.repository:
        return [
            GitHubStatusSink(
                repository=job.trigger.repository,
                commit_sha=job.trigger.commit_sha,
                context=job.pipeline,
                token=settings.github_token,
                api_url=settings.github_api_url,
            )
        ]
    return []

def process_job(
    coordinator: RunCoordinator,
    job: PipelineJob,
    client: redis.Redis,
    settings: Settings,
) -> Optional[RunRecord]:
    """Run one queued job to completion. Blocks until the run is terminal."""
    try:
        pipeline = coordinator.get_pipeline(job.pipeline)
        if not pipeline.trigger.matches(job.trigger):
            raise TriggerRejected(
                f"Pipeline '{pipeline.name}' does not accept {job.trigger.event_type} on '{job.trigger.branch}'"
            )
    except TriggerRejected as e:
        logger.error(f"Dropping run {job.run_id}: {e}")
        client.hset(RUN_STATUS_HASH, job.run_id, "rejected")
        return None

    sinks = run_sinks(job, settings)
    token = CancellationToken(
        poll=lambda: bool(client.sismember(CANCEL_SET, job.run_id))
    )
    workspace = None

    try:
        try:
            workspace = prepare_workspace(job.trigger, settings.workspace_root)
        except WorkspaceError as e:
            logger.error(f"Run {job.run_id} could not prepare its workspace: {e}")
            return coordinator.fail_run(pipeline, job.trigger, job.run_id, str(e), sinks=sinks)

        return coordinator.start_run(
            pipeline,
            job.trigger,
            run_id=job.run_id,
            workspace=workspace,
            cancel_token=token,
            sinks=sinks,
        )
    except TriggerRejected as e:
        logger.warning(f"Run {job.run_id} rejected: {e}")
        client.hset(RUN_STATUS_HASH, job.run_id, "rejected")
        return None
    finally:
        if workspace is not None:
            cleanup_workspace(workspace)
        client.srem(CANCEL_SET, job.run_id)

def get_next_job(client: redis.Redis, timeout: int = 5) -> Optional[PipelineJob]:
    """Pull next job from Redis queue."""
    result = client.brpop(PIPELINE_QUEUE, timeout=timeout)
    if result:
        _, job_data = result
        return PipelineJob.model_validate_json(job_data)
    return None

async def run_job(coordinator: RunCoordinator, job: PipelineJob, client: redis.Redis, settings: Settings):
    logger.info(f"Received job for run {job.run_id} ({job.pipeline})")
    try:
        await asyncio.to_thread(process_job, coordinator, job, client, settings)
    except Exception as e:
        logger.exception(f"Failed to execute run {job.run_id}: {e}")

async def worker_loop(settings: Optional[Settings] = None):
    """Main worker loop. Runs up to worker_concurrency jobs at once."""
    settings = settings or get_settings()
    client = get_redis_client(settings)
    coordinator = build_coordinator(settings, client)
    slots = asyncio.Semaphore(settings.worker_concurrency)
    tasks = set()

    logger.info("Worker started, waiting for jobs...")

    while True:
        try:
            await slots.acquire()
            job = await asyncio.to_thread(get_next_job, client)

            if job is None:
                slots.release()
                continue

            task = asyncio.create_task(run_job(coordinator, job, client, settings))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            task.add_done_callback(lambda _: slots.release())

        except asyncio.CancelledError:
            logger.info("Worker shutting down...")
            break
        except Exception as e:
            logger.exception(f"Worker error: {e}")
            slots.release()
            await asyncio.sleep(5)

    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    client.close()

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker stopped")
