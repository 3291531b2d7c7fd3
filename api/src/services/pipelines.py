"""
Pipeline definitions and trigger routing for the API.
"""

import logging
import uuid
from functools import lru_cache
from typing import List, Sequence

from api.src.config import get_settings
from api.src.models.run import QueuedRun, TriggerResponse
from api.src.services.queue import RunQueue
from controller.src.errors import TriggerRejected
from controller.src.models.step import PipelineConfig, PipelineJob, TriggerEvent, utcnow
from controller.src.services.artifact_store import ArtifactStore, build_artifact_store
from controller.src.services.coordinator import select_pipelines
from controller.src.services.pipeline_parser import parse_pipelines_file

logger = logging.getLogger(__name__)

@lru_cache()
def get_pipelines() -> List[PipelineConfig]:
    """Load pipeline definitions once. Misconfiguration fails at startup."""
    return parse_pipelines_file(get_settings().pipelines_file)

@lru_cache()
def get_artifact_store() -> ArtifactStore:
    return build_artifact_store(get_settings())

async def enqueue_trigger(
    event: TriggerEvent,
    pipelines: Sequence[PipelineConfig],
    queue: RunQueue,
) -> TriggerResponse:
    """
    Queue one run per pipeline accepting the event.
    Raises TriggerRejected when none does.
    """
    matched = select_pipelines(pipelines, event)

    queued = []
    for pipeline in matched:
        job = PipelineJob(
            run_id=str(uuid.uuid4()),
            pipeline=pipeline.name,
            trigger=event,
            queued_at=utcnow().isoformat(),
        )
        await queue.enqueue(job)
        queued.append(QueuedRun(run_id=job.run_id, pipeline=pipeline.name))
        logger.info(f"Run {job.run_id} of {pipeline.name} queued for {event.branch}@{event.commit_sha[:7]}")

    return TriggerResponse(status="queued", runs=queued)

def rejected(e: TriggerRejected) -> TriggerResponse:
    return TriggerResponse(status="skipped", reason=str(e))
