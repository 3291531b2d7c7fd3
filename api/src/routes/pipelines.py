from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional

from api.src.db.database import get_db
from api.src.models.run import ManualTriggerRequest, PipelineSummary, TriggerResponse
from api.src.services.pipelines import enqueue_trigger, get_artifact_store, get_pipelines
from api.src.services.queue import RunQueue, get_run_queue
from controller.src.errors import ArtifactNotFound, TriggerRejected
from controller.src.models.db import PipelineRun, StageResultRow
from controller.src.models.step import PipelineConfig, RunManifest, RunRecord, TriggerEvent
from controller.src.services.artifact_store import ArtifactStore
from controller.src.services.coordinator import build_manifest
from controller.src.services.run_store import row_to_run

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

def _run_query():
    return select(PipelineRun).options(
        selectinload(PipelineRun.stages).selectinload(StageResultRow.steps)
    )

async def _load_run(db: AsyncSession, run_id: str) -> RunRecord:
    result = await db.execute(_run_query().where(PipelineRun.id == run_id))
    row = result.scalar_one_or_none()

    if not row:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return row_to_run(row)

@router.get("", response_model=List[PipelineSummary])
async def list_pipelines(pipelines: List[PipelineConfig] = Depends(get_pipelines)):
    """List configured pipelines."""
    return [
        PipelineSummary(
            name=p.name,
            stages=[s.name for s in p.stages],
            trigger={"events": p.trigger.events, "branches": p.trigger.branches},
            deduplicate=p.deduplicate,
        )
        for p in pipelines
    ]

@router.post("/trigger", response_model=TriggerResponse)
async def manual_trigger(
    request: ManualTriggerRequest,
    pipelines: List[PipelineConfig] = Depends(get_pipelines),
    queue: RunQueue = Depends(get_run_queue),
):
    """Trigger matching pipelines by hand."""
    event = TriggerEvent(**request.model_dump())
    try:
        return await enqueue_trigger(event, pipelines, queue)
    except TriggerRejected as e:
        raise HTTPException(status_code=422, detail=str(e))

@router.get("/runs", response_model=List[RunRecord])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    pipeline: Optional[str] = None,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List pipeline runs, newest first."""
    query = _run_query().order_by(PipelineRun.created_at.desc())

    if pipeline:
        query = query.where(PipelineRun.pipeline == pipeline)
    if status:
        query = query.where(PipelineRun.status == status)

    result = await db.execute(query.limit(limit).offset(offset))
    return [row_to_run(row) for row in result.scalars().all()]

@router.get("/runs/{run_id}", response_model=RunRecord)
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)):
    """Get a run with its ordered stage and step results."""
    return await _load_run(db, run_id)

@router.get("/runs/{run_id}/status")
async def get_run_status(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    queue: RunQueue = Depends(get_run_queue),
):
    """Get recorded and live status of a run."""
    run = await _load_run(db, run_id)
    live_status = await queue.get_run_status(run_id)

    return {
        "run_id": run_id,
        "status": run.status.value,
        "live_status": live_status,
        "stages": [
            {"name": stage.stage_name, "status": stage.status.value}
            for stage in run.stage_results
        ],
    }

@router.get("/runs/{run_id}/manifest", response_model=RunManifest)
async def get_run_manifest(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Artifact manifest of a run."""
    run = await _load_run(db, run_id)
    return build_manifest(run, store)

@router.get("/runs/{run_id}/artifacts/{name:path}")
async def download_artifact(
    run_id: str,
    name: str,
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Download one artifact."""
    try:
        content = store.get(run_id, name)
    except ArtifactNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    filename = name.rsplit("/", 1)[-1]
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@router.post("/runs/{run_id}/cancel", status_code=202)
async def cancel_run(
    run_id: str,
    queue: RunQueue = Depends(get_run_queue),
):
    """Request cancellation. The run stops at its next step boundary."""
    if not await queue.request_cancel(run_id):
        raise HTTPException(status_code=409, detail=f"Run {run_id} is not active")
    return {"run_id": run_id, "status": "cancelling"}

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get run counts by status and by pipeline."""
    result = await db.execute(
        select(PipelineRun.status, func.count(PipelineRun.id)).group_by(PipelineRun.status)
    )
    status_counts = {row[0]: row[1] for row in result.all()}

    result = await db.execute(
        select(PipelineRun.pipeline, func.count(PipelineRun.id)).group_by(PipelineRun.pipeline)
    )
    pipeline_counts = {row[0]: row[1] for row in result.all()}

    return {
        "runs": status_counts,
        "pipelines": pipeline_counts,
        "total_runs": sum(status_counts.values()),
    }
