"""
Market value endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends
from api.dependencies import get_orchestrator
from ingestion.runner import SyncOrchestrator, StageRunResult
from models.base import StageName, ExecutionStatus
from schemas.api import MarketValueRecomputeRequest, MarketValueResponse
from schemas.sync import StageOptions
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/market-values", tags=["Market Values"])


def _to_response(run: StageRunResult) -> MarketValueResponse:
    result = run.result
    return MarketValueResponse(
        success=run.status == ExecutionStatus.COMPLETED,
        execution_id=run.execution_id,
        run_id=result.metadata.get("run_id"),
        metrics=result.metadata.get("metrics") or {},
        records_processed=result.records_processed,
        records_failed=result.records_failed,
        error=result.first_error if run.status != ExecutionStatus.COMPLETED else None,
    )


@router.post("/recompute", response_model=MarketValueResponse)
async def recompute_market_values(
    request: Optional[MarketValueRecomputeRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Rebuild (or reuse) the multiplier matrix and re-price every player.
    """
    request = request or MarketValueRecomputeRequest()
    logger.info(
        f"POST /market-values/recompute: window={request.window_days}, "
        f"min_sample={request.min_sample_size}, force={request.force_update}"
    )
    run = await orchestrator.run_stage(
        StageName.MARKET_VALUES,
        StageOptions(
            window_days=request.window_days,
            min_sample_size=request.min_sample_size,
            force_update=request.force_update,
        ),
    )
    return _to_response(run)


@router.post("/fix-zero-values", response_model=MarketValueResponse)
async def fix_zero_market_values(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Re-price only players whose stored estimate is zero, with a freshly built matrix"""
    run = await orchestrator.run_stage(
        StageName.MARKET_VALUES,
        StageOptions(only_degenerate=True, force_update=True),
    )
    return _to_response(run)
