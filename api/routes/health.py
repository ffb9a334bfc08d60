"""
Health check endpoint with database and stage status
"""

from fastapi import APIRouter, Depends
from api.dependencies import get_store
from core.exceptions import StoreError
from ingestion.loaders.base import RecordStore
from models.base import ExecutionStatus, StageStatus
from schemas.api import HealthCheckResponse, StageStateResponse
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(store: RecordStore = Depends(get_store)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Persisted state of every sync stage
    - Number of running executions
    """
    db_connected = False
    try:
        db_connected = await store.ping()
    except (StoreError, OSError) as e:
        logger.error(f"Database connection failed: {str(e)}")

    stages = []
    running = 0
    if db_connected:
        try:
            stages = await store.list_stage_states()
            running = len(await store.list_executions(status=ExecutionStatus.RUNNING, limit=100))
        except StoreError as e:
            logger.error(f"Failed to fetch stage states: {e.message}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        stages=[StageStateResponse.model_validate(s.model_dump()) for s in stages],
        total_stages=len(stages),
        failed_stages=sum(1 for s in stages if s.status == StageStatus.FAILED),
        running_executions=running,
    )
