"""
Run coordinator - turns trigger events into runs and walks their stages.
"""

import logging
import os
import shutil
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import redis

from controller.src.errors import DuplicateRun, PipelineMisconfigured, RunNotFound, TriggerRejected
from controller.src.models.step import (
    ArtifactRef,
    PipelineConfig,
    RunManifest,
    RunRecord,
    StageConfig,
    StageResult,
    Status,
    TriggerEvent,
    utcnow,
)
from controller.src.services.artifact_store import ArtifactStore
from controller.src.services.executor import (
    CancellationToken,
    ExecutionContext,
    StepExecutor,
    output_artifact_name,
    step_log_name,
)
from controller.src.services.pipeline_parser import validate_pipeline
from controller.src.services.run_store import InMemoryRunRepository, RunRepository
from controller.src.services.runners import CommandRunner
from controller.src.services.stage_runner import StageRunner
from controller.src.services.status_reporter import StatusReporter, StatusSink
from controller.src.services.workspace import is_within

logger = logging.getLogger(__name__)

class RunGuard(Protocol):
    """At most one active run per key. Claims are owned by a run id."""

    def acquire(self, key: str, owner: str, ttl: Optional[int] = None) -> bool:
        """Claim the key. Returns False if it is already held."""

    def refresh(self, key: str, owner: str, ttl: Optional[int] = None) -> bool:
        """Extend the owner's claim. Returns False if the claim was lost."""

    def release(self, key: str, owner: str) -> None:
        """Release the key if owner still holds it."""

class InProcessRunGuard:
    def __init__(self):
        self._lock = threading.Lock()
        self._held: Dict[str, str] = {}

    def acquire(self, key: str, owner: str, ttl: Optional[int] = None) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held[key] = owner
            return True

    def refresh(self, key: str, owner: str, ttl: Optional[int] = None) -> bool:
        with self._lock:
            return self._held.get(key) == owner

    def release(self, key: str, owner: str) -> None:
        with self._lock:
            if self._held.get(key) == owner:
                del self._held[key]

# Both scripts act only while the claim still holds the owner's run id
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

REFRESH_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""

class RedisRunGuard:
    """Share the active-run keys between workers with SET NX EX and owner-checked scripts."""

    def __init__(self, client: redis.Redis, ttl: int = 3600, prefix: str = "pipewright:active:"):
        self.client = client
        self.ttl = ttl
        self.prefix = prefix
        self._release = client.register_script(RELEASE_SCRIPT)
        self._refresh = client.register_script(REFRESH_SCRIPT)

    def _ttl(self, ttl: Optional[int]) -> int:
        return max(self.ttl, ttl or 0)

    def acquire(self, key: str, owner: str, ttl: Optional[int] = None) -> bool:
        return bool(self.client.set(self.prefix + key, owner, nx=True, ex=self._ttl(ttl)))

    def refresh(self, key: str, owner: str, ttl: Optional[int] = None) -> bool:
        return bool(self._refresh(keys=[self.prefix + key], args=[owner, self._ttl(ttl)]))

    def release(self, key: str, owner: str) -> None:
        self._release(keys=[self.prefix + key], args=[owner])

def select_pipelines(pipelines: Iterable[PipelineConfig], event: TriggerEvent) -> List[PipelineConfig]:
    """Return every pipeline whose trigger filter accepts the event. Raises TriggerRejected."""
    matched = [p for p in pipelines if p.trigger.matches(event)]
    if not matched:
        raise TriggerRejected(
            f"No pipeline accepts {event.event_type} on '{event.branch}'"
        )
    return matched

CLAIM_MARGIN = 60

def claim_seconds(pipeline: PipelineConfig) -> int:
    """Lifetime of a dedup claim. It outlasts the longest step and is refreshed before each one."""
    longest = max((step.timeout for stage in pipeline.stages for step in stage.steps), default=0)
    return int(longest) + CLAIM_MARGIN

def group_stages(stages: Iterable[StageConfig]) -> List[List[StageConfig]]:
    """Split stages into execution groups. Consecutive stages sharing a parallel_group fan out together."""
    groups: List[List[StageConfig]] = []
    for stage in stages:
        if (
            groups
            and stage.parallel_group is not None
            and groups[-1][-1].parallel_group == stage.parallel_group
        ):
            groups[-1].append(stage)
        else:
            groups.append([stage])
    return groups

class RunCoordinator:
    def __init__(
        self,
        pipelines: Iterable[PipelineConfig],
        store: ArtifactStore,
        runner: Optional[CommandRunner] = None,
        reporter: Optional[StatusReporter] = None,
        runs: Optional[RunRepository] = None,
        guard: Optional[RunGuard] = None,
        workspace_root: Optional[str] = None,
        inherit_env: bool = True,
    ):
        self.pipelines: Dict[str, PipelineConfig] = {}
        for pipeline in pipelines:
            validate_pipeline(pipeline)
            if pipeline.name in self.pipelines:
                raise PipelineMisconfigured(f"Duplicate pipeline name '{pipeline.name}'")
            self.pipelines[pipeline.name] = pipeline

        self.store = store
        self.executor = StepExecutor(store, runner)
        self.reporter = reporter or StatusReporter()
        self.runs = runs or InMemoryRunRepository()
        self.guard = guard or InProcessRunGuard()
        self.workspace_root = workspace_root
        self.inherit_env = inherit_env

        self._lock = threading.Lock()
        self._active: Dict[str, CancellationToken] = {}

    def get_pipeline(self, name: str) -> PipelineConfig:
        try:
            return self.pipelines[name]
        except KeyError:
            raise TriggerRejected(f"Unknown pipeline '{name}'")

    def select_pipelines(self, event: TriggerEvent) -> List[PipelineConfig]:
        return select_pipelines(self.pipelines.values(), event)

    def trigger(self, event: TriggerEvent, **kwargs) -> List[RunRecord]:
        """Start a run for every matching pipeline, one after the other."""
        return [self.start_run(p, event, **kwargs) for p in self.select_pipelines(event)]

    def cancel(self, run_id: str) -> bool:
        """Request cooperative cancellation. Returns False if the run is not active."""
        with self._lock:
            token = self._active.get(run_id)
        if token is None:
            return False
        logger.info(f"Cancellation requested for run {run_id}")
        token.cancel()
        return True

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._active

    def start_run(
        self,
        pipeline: PipelineConfig,
        event: TriggerEvent,
        run_id: Optional[str] = None,
        workspace: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        sinks: Iterable[StatusSink] = (),
    ) -> RunRecord:
        """
        Execute one run of a pipeline and return its terminal record.

        Configuration errors, filter mismatches and deduplication conflicts
        are raised before any run is created.
        """
        validate_pipeline(pipeline)
        if not pipeline.trigger.matches(event):
            raise TriggerRejected(
                f"Pipeline '{pipeline.name}' does not accept {event.event_type} on '{event.branch}'"
            )

        dedup_key = None
        run_id = run_id or str(uuid.uuid4())
        claim_ttl = claim_seconds(pipeline)
        if pipeline.deduplicate:
            dedup_key = f"{pipeline.name}:{pipeline.trigger.dedup_key(event)}"
            if not self.guard.acquire(dedup_key, run_id, claim_ttl):
                raise DuplicateRun(pipeline.name, pipeline.trigger.dedup_key(event))

        run = RunRecord(
            run_id=run_id,
            pipeline=pipeline.name,
            trigger=event,
        )
        token = cancel_token or CancellationToken()
        reporter = self.reporter.with_sinks(sinks)

        heartbeat = None
        if dedup_key is not None:
            def heartbeat():
                if not self.guard.refresh(dedup_key, run_id, claim_ttl):
                    logger.warning(f"Run {run_id} no longer holds its claim on {dedup_key}")

        with self._lock:
            self._active[run.run_id] = token

        try:
            self.runs.create_run(run)
            reporter.emit(run.run_id, "run", pipeline.name, None, Status.PENDING)

            run.started_at = utcnow()
            self.runs.mark_running(run)
            reporter.emit(run.run_id, "run", pipeline.name, Status.PENDING, Status.RUNNING)
            logger.info(f"Starting run {run.run_id} of {pipeline.name} with {len(pipeline.stages)} stages")

            owned_workspace = workspace is None
            try:
                if owned_workspace:
                    workspace = tempfile.mkdtemp(prefix="pipewright_", dir=self.workspace_root)
                self._execute_stages(run, pipeline, workspace, token, reporter, heartbeat)
            except Exception as e:
                logger.exception(f"Run {run.run_id} aborted by an engine error")
                run.error = f"{type(e).__name__}: {e}"
                raise
            finally:
                if owned_workspace and workspace:
                    shutil.rmtree(workspace, ignore_errors=True)
                run.finished_at = utcnow()
                self.runs.finish_run(run)
                reporter.emit(run.run_id, "run", pipeline.name, Status.RUNNING, run.status)
                logger.info(f"Run {run.run_id} finished with status: {run.status.value}")
        finally:
            with self._lock:
                self._active.pop(run.run_id, None)
            if dedup_key is not None:
                self.guard.release(dedup_key, run_id)

        return run

    def _base_env(self, run: RunRecord, pipeline: PipelineConfig, workspace: str) -> Dict[str, str]:
        env = dict(os.environ) if self.inherit_env else {"PATH": os.environ.get("PATH", os.defpath)}
        env.update(pipeline.env)
        env.update({
            "CI": "true",
            "PIPEWRIGHT_RUN_ID": run.run_id,
            "PIPEWRIGHT_PIPELINE": pipeline.name,
            "PIPEWRIGHT_EVENT": run.trigger.event_type,
            "PIPEWRIGHT_BRANCH": run.trigger.branch,
            "PIPEWRIGHT_COMMIT_SHA": run.trigger.commit_sha,
            "PIPEWRIGHT_ACTOR": run.trigger.actor,
            "PIPEWRIGHT_WORKSPACE": workspace,
        })
        return env

    def _execute_stages(
        self,
        run: RunRecord,
        pipeline: PipelineConfig,
        workspace: str,
        token: CancellationToken,
        reporter: StatusReporter,
        heartbeat: Optional[Callable[[], None]] = None,
    ):
        stage_runner = StageRunner(self.executor, reporter)
        base = ExecutionContext(
            run_id=run.run_id,
            stage_name="",
            workspace=workspace,
            env=self._base_env(run, pipeline, workspace),
            cancel_token=token,
            heartbeat=heartbeat,
        )

        for group in group_stages(pipeline.stages):
            if token.is_cancelled():
                logger.info(f"Run {run.run_id} cancelled before stage {group[0].name}")
                run.cancelled = True
                break

            for stage in group:
                reporter.emit(run.run_id, "stage", stage.name, Status.PENDING, Status.RUNNING)

            if len(group) == 1:
                results = [stage_runner.run(group[0], base)]
            else:
                logger.info(f"Fanning out stages {[s.name for s in group]}")
                with ThreadPoolExecutor(max_workers=len(group)) as pool:
                    futures = [pool.submit(stage_runner.run, stage, base) for stage in group]
                    results = [f.result() for f in futures]

            blocked = False
            for stage, result in zip(group, results):
                if result.status == Status.SUCCEEDED:
                    self._register_outputs(run.run_id, stage, result, workspace)
                run.append_stage_result(result)
                self.runs.append_stage_result(run.run_id, result)
                reporter.emit(run.run_id, "stage", stage.name, Status.RUNNING, result.status)

                if result.status == Status.CANCELLED:
                    run.cancelled = True
                if result.blocking_failure:
                    logger.error(f"Stage {stage.name} failed, stopping run {run.run_id}")
                    blocked = True
                elif result.status == Status.FAILED:
                    logger.warning(f"Stage {stage.name} failed, continuing (continue_on_failure)")

            if blocked or run.cancelled:
                break

    def _register_outputs(self, run_id: str, stage: StageConfig, result: StageResult, workspace: str):
        """Store the stage's combined stdout and its steps' declared outputs."""
        combined = b"".join(
            self.store.get(run_id, step_log_name(stage.name, step.step_name))
            for step in result.step_results
        )
        self.store.put(run_id, f"{stage.name}-output", combined)

        for step in stage.steps:
            for output in step.outputs:
                path = os.path.join(workspace, output)
                for file_path in _iter_files(path):
                    if not is_within(workspace, file_path):
                        logger.warning(f"Skipping output {file_path}: it resolves outside the workspace")
                        continue
                    rel = os.path.relpath(file_path, workspace)
                    with open(file_path, "rb") as f:
                        self.store.put(run_id, output_artifact_name(stage.name, rel), f.read())

    def fail_run(
        self,
        pipeline: PipelineConfig,
        event: TriggerEvent,
        run_id: str,
        error: str,
        sinks: Iterable[StatusSink] = (),
    ) -> RunRecord:
        """Record a run that failed before its first stage, e.g. on checkout."""
        run = RunRecord(run_id=run_id, pipeline=pipeline.name, trigger=event)
        reporter = self.reporter.with_sinks(sinks)

        self.runs.create_run(run)
        reporter.emit(run_id, "run", pipeline.name, None, Status.PENDING)
        run.started_at = utcnow()
        self.runs.mark_running(run)
        run.error = error
        run.finished_at = utcnow()
        self.runs.finish_run(run)
        reporter.emit(run_id, "run", pipeline.name, Status.PENDING, run.status)
        logger.error(f"Run {run_id} of {pipeline.name} failed before its first stage: {error}")
        return run

    def get_run(self, run_id: str) -> RunRecord:
        run = self.runs.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def manifest(self, run_id: str) -> RunManifest:
        """Describe a run's outcome and artifacts for the hosting platform."""
        run = self.get_run(run_id)
        return build_manifest(run, self.store)

def build_manifest(run: RunRecord, store: ArtifactStore) -> RunManifest:
    return RunManifest(
        run_id=run.run_id,
        pipeline=run.pipeline,
        status=run.status,
        artifacts=[
            ArtifactRef(name=a.name, content_ref=a.content_ref)
            for a in store.artifacts(run.run_id)
        ],
        stages=run.stage_results,
    )

def _iter_files(path: str):
    if os.path.isfile(path):
        yield path
        return
    for root, dirs, files in os.walk(path):
        dirs.sort()
        for name in sorted(files):
            yield os.path.join(root, name)
