"""
Sync status endpoints
"""

from enum import Enum
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from api.dependencies import get_orchestrator
from api.middleware import request_id_of
from core.exceptions import RunStateError
from ingestion.runner import SyncOrchestrator
from schemas.api import (
    SyncStatusResponse,
    OrchestratorStatusResponse,
    ExecutionResponse,
    StageStateResponse,
    SyncStatsResponse,
    RunStateResponse,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Status"])


class StatusType(str, Enum):
    CURRENT = "current"
    LATEST = "latest"
    HISTORY = "history"
    STATS = "stats"


def _camel(response_cls, value):
    if value is None:
        return None
    return response_cls.model_validate(value.model_dump())


@router.get("/status", response_model=SyncStatusResponse, response_model_exclude_none=True)
async def get_sync_status(
    request: Request,
    type: StatusType = Query(StatusType.CURRENT, description="current, latest, history or stats"),
    limit: int = Query(10, ge=1, le=100, description="Number of executions to return"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Get sync status.

    Returns, depending on `type`:
    - current: running executions and the state of every stage
    - latest: the most recent execution
    - history: recent executions, newest first
    - stats: record counters and executions by status
    """
    logger.info(f"[{request_id_of(request)}] GET /sync/status?type={type.value}")

    view = await orchestrator.status(type.value, limit)

    return SyncStatusResponse(
        type=view["type"],
        is_running=view.get("is_running"),
        execution=_camel(ExecutionResponse, view.get("execution")),
        executions=(
            [_camel(ExecutionResponse, e) for e in view["executions"]]
            if "executions" in view else None
        ),
        stages=(
            [_camel(StageStateResponse, s) for s in view["stages"]]
            if "stages" in view else None
        ),
        stats=_camel(SyncStatsResponse, view.get("stats")),
    )


@router.get("/orchestrator/{orchestrator_id}", response_model=OrchestratorStatusResponse)
async def get_orchestrator_status(
    orchestrator_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    try:
        view = await orchestrator.get_orchestrator_status(orchestrator_id)
    except RunStateError as e:
        raise HTTPException(status_code=404, detail=e.message)

    return OrchestratorStatusResponse(
        orchestrator_id=view["orchestrator_id"],
        is_running=view["is_running"],
        execution=_camel(ExecutionResponse, view["execution"]),
        state=_camel(RunStateResponse, view["state"]),
    )
