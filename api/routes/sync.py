"""
Sync control endpoints: full runs, resume, single stages, chunks, single players, stop
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Path
from api.dependencies import get_orchestrator, get_store
from ingestion.loaders.base import RecordStore
from ingestion.runner import SyncOrchestrator, CANCEL_MESSAGE
from models.base import StageName
from schemas.api import (
    SyncRunRequest,
    ResumeRequest,
    ChunkRequest,
    StageRunRequest,
    SyncRunResponse,
    StageRunResponse,
    StopResponse,
    PlayerImportResponse,
)
from schemas.sync import StageOptions
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("/full", response_model=SyncRunResponse)
async def run_sync(
    request: Optional[SyncRunRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Run a sync in the requested mode.

    With a time budget the run may return `isComplete: false`; call
    `/sync/resume/{orchestratorId}` to continue it.
    """
    request = request or SyncRunRequest()
    logger.info(f"POST /sync/full: {request.sync_type.value}")
    result = await orchestrator.run(
        request.sync_type,
        triggered_by="api",
        time_budget_seconds=request.time_budget_seconds,
    )
    return SyncRunResponse.from_result(result)


@router.post("/resume/{orchestrator_id}", response_model=SyncRunResponse)
async def resume_sync(
    orchestrator_id: str,
    request: Optional[ResumeRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    store: RecordStore = Depends(get_store)
):
    if await store.get_run_state(orchestrator_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown orchestrator run: {orchestrator_id}")

    budget = request.time_budget_seconds if request else None
    result = await orchestrator.resume(orchestrator_id, time_budget_seconds=budget)
    return SyncRunResponse.from_result(result)


@router.post("/stages/{stage}/chunk", response_model=StageRunResponse)
async def run_stage_chunk(
    stage: StageName,
    request: Optional[ChunkRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Run one bounded chunk of a chunkable stage.

    Repeat with the returned `continueFrom` until `isComplete` is true.
    """
    request = request or ChunkRequest()
    run = await orchestrator.run_chunk(
        stage,
        max_pages=request.max_pages,
        continue_from=request.continue_from,
        force=request.force,
    )
    return StageRunResponse.from_run(run)


@router.post("/stages/{stage}/run", response_model=StageRunResponse)
async def run_single_stage(
    stage: StageName,
    request: Optional[StageRunRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    request = request or StageRunRequest()
    run = await orchestrator.run_stage(stage, StageOptions(force=request.force))
    return StageRunResponse.from_run(run)


@router.post("/players/{player_id}", response_model=PlayerImportResponse)
async def import_single_player(
    player_id: int = Path(..., ge=1),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """Import (or refresh) one player's basic attributes by id, without market values"""
    outcome = await orchestrator.import_player(player_id)

    if player_id in outcome.not_found:
        raise HTTPException(status_code=404, detail=f"Player {player_id} not found in the marketplace")
    if player_id in outcome.failed:
        raise HTTPException(status_code=502, detail=outcome.failed[player_id])

    return PlayerImportResponse(player_id=player_id, message=f"Player {player_id} imported")


@router.post("/stop", response_model=StopResponse)
async def stop_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Cancel every running execution; calling it with nothing running is a no-op"""
    stopped = await orchestrator.stop()

    if stopped.stopped_executions:
        message = f"{CANCEL_MESSAGE}: {stopped.stopped_executions} execution(s) stopped"
    else:
        message = "No running executions to stop"

    return StopResponse(
        success=True,
        stopped_executions=stopped.stopped_executions,
        execution_ids=stopped.execution_ids,
        message=message,
    )
