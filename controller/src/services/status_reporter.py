"""
Report run, stage and step status transitions to interested sinks.
"""

import logging
import threading
from typing import Iterable, List, Optional, Protocol

import httpx
import redis

from controller.src.models.step import Status, StatusEvent

logger = logging.getLogger(__name__)

RUN_EVENTS_CHANNEL = "pipewright:events"
RUN_STATUS_HASH = "pipewright:status"

class StatusSink(Protocol):
    def handle(self, event: StatusEvent) -> None:
        """Consume one status transition."""

class StatusReporter:
    """Fan status events out to sinks. A failing sink never fails the run."""

    def __init__(self, sinks: Optional[Iterable[StatusSink]] = None):
        self.sinks: List[StatusSink] = list(sinks or [])

    def with_sinks(self, extra: Iterable[StatusSink]) -> "StatusReporter":
        return StatusReporter(self.sinks + list(extra))

    def emit(
        self,
        run_id: str,
        entity: str,
        name: str,
        old_status: Optional[Status],
        new_status: Status,
    ) -> StatusEvent:
        event = StatusEvent(
            run_id=run_id,
            entity=entity,
            name=name,
            old_status=old_status,
            new_status=new_status,
        )
        for sink in self.sinks:
            try:
                sink.handle(event)
            except Exception:
                logger.exception(
                    f"Status sink {type(sink).__name__} failed for run {run_id}"
                )
        return event

class LoggingSink:
    def handle(self, event: StatusEvent) -> None:
        old = event.old_status.value if event.old_status else "-"
        logger.info(
            f"[{event.run_id}] {event.entity} {event.name}: {old} -> {event.new_status.value}"
        )

class MemorySink:
    """Collect events in order."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[StatusEvent] = []

    def handle(self, event: StatusEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_entity(self, entity: str) -> List[StatusEvent]:
        with self._lock:
            return [e for e in self.events if e.entity == entity]

class RedisSink:
    """Publish events on a Redis channel and mirror run status into a hash."""

    def __init__(
        self,
        client: redis.Redis,
        channel: str = RUN_EVENTS_CHANNEL,
        status_hash: str = RUN_STATUS_HASH,
    ):
        self.client = client
        self.channel = channel
        self.status_hash = status_hash

    @classmethod
    def from_url(cls, url: str) -> "RedisSink":
        return cls(redis.from_url(url, decode_responses=True))

    def handle(self, event: StatusEvent) -> None:
        self.client.publish(self.channel, event.model_dump_json())
        if event.entity == "run":
            self.client.hset(self.status_hash, event.run_id, event.new_status.value)

GITHUB_STATES = {
    Status.PENDING: "pending",
    Status.RUNNING: "pending",
    Status.SUCCEEDED: "success",
    Status.FAILED: "failure",
    Status.CANCELLED: "error",
}

class GitHubStatusSink:
    """Post run-level transitions as GitHub commit statuses."""

    def __init__(
        self,
        repository: str,
        commit_sha: str,
        context: str,
        token: str,
        api_url: str = "https://api.github.com",
        client: Optional[httpx.Client] = None,
        target_url: Optional[str] = None,
    ):
        self.repository = repository
        self.commit_sha = commit_sha
        self.context = context
        self.target_url = target_url
        self.client = client or httpx.Client(
            base_url=api_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
            },
            timeout=10.0,
        )

    def handle(self, event: StatusEvent) -> None:
        if event.entity != "run":
            return
        state = GITHUB_STATES.get(event.new_status)
        if state is None:
            return

        body = {
            "state": state,
            "context": f"pipewright/{self.context}",
            "description": f"Run {event.run_id} {event.new_status.value}",
        }
        if self.target_url:
            body["target_url"] = self.target_url

        response = self.client.post(
            f"/repos/{self.repository}/statuses/{self.commit_sha}",
            json=body,
        )
        response.raise_for_status()
        logger.debug(f"Posted {state} status for {self.repository}@{self.commit_sha[:7]}")
