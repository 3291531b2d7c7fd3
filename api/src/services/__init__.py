from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
    push_event_to_trigger,
    pull_request_event_to_trigger,
)
from api.src.services.pipelines import (
    get_pipelines,
    get_artifact_store,
    enqueue_trigger,
)
from api.src.services.queue import RunQueue, get_run_queue

__all__ = [
    "verify_signature",
    "parse_webhook_payload",
    "push_event_to_trigger",
    "pull_request_event_to_trigger",
    "get_pipelines",
    "get_artifact_store",
    "enqueue_trigger",
    "RunQueue",
    "get_run_queue",
]
