"""
Persist run records and their stage/step trails.
"""

import logging
import threading
from typing import Dict, List, Optional, Protocol

from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import selectinload, sessionmaker

from controller.src.models.db import Base, PipelineRun, StageResultRow, StepResultRow
from controller.src.models.step import (
    RunRecord,
    StageResult,
    Status,
    StepResult,
    TriggerEvent,
    utcnow,
)

logger = logging.getLogger(__name__)

class RunRepository(Protocol):
    """Persistence backend for run records."""

    def create_run(self, run: RunRecord) -> None:
        """Persist a new pending run."""

    def mark_running(self, run: RunRecord) -> None:
        """Record that the run started."""

    def append_stage_result(self, run_id: str, result: StageResult) -> None:
        """Append a completed stage result. Stage results are never updated."""

    def finish_run(self, run: RunRecord) -> None:
        """Record the run's terminal state."""

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Return a run by id."""

    def list_runs(self, limit: int = 20, offset: int = 0, pipeline: Optional[str] = None) -> List[RunRecord]:
        """Return runs, newest first."""

class InMemoryRunRepository:
    """Keep run records in memory. Data is lost on restart."""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: Dict[str, RunRecord] = {}

    def create_run(self, run: RunRecord) -> None:
        with self._lock:
            if run.run_id in self._runs:
                raise ValueError(f"Run {run.run_id} already exists")
            self._runs[run.run_id] = run.model_copy(deep=True)

    def mark_running(self, run: RunRecord) -> None:
        with self._lock:
            self._runs[run.run_id].started_at = run.started_at

    def append_stage_result(self, run_id: str, result: StageResult) -> None:
        with self._lock:
            self._runs[run_id].append_stage_result(result)

    def finish_run(self, run: RunRecord) -> None:
        with self._lock:
            stored = self._runs[run.run_id]
            stored.cancelled = run.cancelled
            stored.error = run.error
            stored.finished_at = run.finished_at

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def list_runs(self, limit: int = 20, offset: int = 0, pipeline: Optional[str] = None) -> List[RunRecord]:
        with self._lock:
            runs = [r for r in self._runs.values() if pipeline is None or r.pipeline == pipeline]
            runs.sort(key=lambda r: r.created_at, reverse=True)
            return [r.model_copy(deep=True) for r in runs[offset:offset + limit]]

def row_to_run(row: PipelineRun) -> RunRecord:
    """Convert a run row with loaded stage/step rows into a RunRecord."""
    return RunRecord(
        run_id=row.id,
        pipeline=row.pipeline,
        trigger=TriggerEvent(
            event_type=row.event_type,
            branch=row.branch,
            commit_sha=row.commit_sha,
            actor=row.triggered_by or "",
            repository=row.repository,
            clone_url=row.clone_url,
        ),
        stage_results=[
            StageResult(
                stage_name=stage.name,
                status=Status(stage.status),
                continue_on_failure=stage.continue_on_failure,
                started_at=stage.started_at,
                finished_at=stage.finished_at,
                step_results=[
                    StepResult(
                        step_name=step.name,
                        status=Status(step.status),
                        exit_code=step.exit_code,
                        stdout_ref=step.stdout_ref,
                        stderr_ref=step.stderr_ref,
                        error=step.error,
                        required=step.required,
                        expected_exit_code=step.expected_exit_code,
                        timeout=step.timeout,
                        started_at=step.started_at,
                        finished_at=step.finished_at,
                    )
                    for step in stage.steps
                ],
            )
            for stage in row.stages
        ],
        cancelled=row.cancelled,
        error=row.error,
        started_at=row.started_at,
        finished_at=row.finished_at,
        created_at=row.created_at or utcnow(),
    )

class SqlRunRepository:
    """Store run records with SQLAlchemy (sync sessions)."""

    def __init__(self, database_url: str, create_schema: bool = False, **engine_kwargs):
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_schema:
            self.init_schema()

    def init_schema(self):
        Base.metadata.create_all(self.engine)

    def create_run(self, run: RunRecord) -> None:
        with self.Session() as session:
            session.add(
                PipelineRun(
                    id=run.run_id,
                    pipeline=run.pipeline,
                    event_type=run.trigger.event_type,
                    branch=run.trigger.branch,
                    commit_sha=run.trigger.commit_sha,
                    triggered_by=run.trigger.actor,
                    repository=run.trigger.repository,
                    clone_url=run.trigger.clone_url,
                    status=run.status.value,
                    cancelled=run.cancelled,
                    created_at=run.created_at,
                )
            )
            session.commit()
        logger.debug(f"Created run {run.run_id}")

    def _update_run(self, run_id: str, **values):
        with self.Session() as session:
            session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == run_id)
                .values(updated_at=utcnow(), **values)
            )
            session.commit()

    def mark_running(self, run: RunRecord) -> None:
        self._update_run(run.run_id, status=run.status.value, started_at=run.started_at)
        logger.info(f"Updated run {run.run_id} status to {run.status.value}")

    def append_stage_result(self, run_id: str, result: StageResult) -> None:
        with self.Session() as session:
            stage_order = session.query(StageResultRow).filter(
                StageResultRow.run_id == run_id
            ).count()
            stage_row = StageResultRow(
                run_id=run_id,
                stage_order=stage_order,
                name=result.stage_name,
                status=result.status.value,
                continue_on_failure=result.continue_on_failure,
                started_at=result.started_at,
                finished_at=result.finished_at,
            )
            stage_row.steps = [
                StepResultRow(
                    step_order=i,
                    name=step.step_name,
                    status=step.status.value,
                    exit_code=step.exit_code,
                    expected_exit_code=step.expected_exit_code,
                    timeout=step.timeout,
                    required=step.required,
                    error=step.error,
                    stdout_ref=step.stdout_ref,
                    stderr_ref=step.stderr_ref,
                    started_at=step.started_at,
                    finished_at=step.finished_at,
                )
                for i, step in enumerate(result.step_results)
            ]
            session.add(stage_row)
            session.commit()

    def finish_run(self, run: RunRecord) -> None:
        self._update_run(
            run.run_id,
            status=run.status.value,
            cancelled=run.cancelled,
            error=run.error,
            finished_at=run.finished_at,
        )
        logger.info(f"Updated run {run.run_id} status to {run.status.value}")

    def _load_query(self):
        return select(PipelineRun).options(
            selectinload(PipelineRun.stages).selectinload(StageResultRow.steps)
        )

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self.Session() as session:
            row = session.execute(
                self._load_query().where(PipelineRun.id == run_id)
            ).scalar_one_or_none()
            return row_to_run(row) if row else None

    def list_runs(self, limit: int = 20, offset: int = 0, pipeline: Optional[str] = None) -> List[RunRecord]:
        query = self._load_query().order_by(PipelineRun.created_at.desc())
        if pipeline:
            query = query.where(PipelineRun.pipeline == pipeline)
        with self.Session() as session:
            rows = session.execute(query.limit(limit).offset(offset)).scalars().all()
            return [row_to_run(row) for row in rows]
