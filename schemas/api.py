"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import SyncType, ExecutionStatus, StageName
from schemas.sync import StageResult, StageState, RunState, ExecutionInfo, SyncStats


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ============================================================================
# Sync Requests
# ============================================================================

class SyncRunRequest(CamelModel):
    """Body of POST /sync/full"""
    sync_type: SyncType = Field(default=SyncType.DAILY, description="initial, daily or full")
    time_budget_seconds: Optional[float] = Field(
        None, gt=0, description="Pause the run after this many seconds; resume continues it"
    )

    class Config:
        json_schema_extra = {
            "example": {"syncType": "daily", "timeBudgetSeconds": 240}
        }


class ResumeRequest(CamelModel):
    time_budget_seconds: Optional[float] = Field(None, gt=0)


class ChunkRequest(CamelModel):
    """Body of POST /sync/stages/{stage}/chunk"""
    max_pages: Optional[int] = Field(None, description="Page budget for this chunk")
    continue_from: Optional[str] = Field(None, description="Continuation token from the previous chunk")
    force: bool = False

    class Config:
        json_schema_extra = {
            "example": {"maxPages": 2, "continueFrom": None}
        }


class StageRunRequest(CamelModel):
    """Body of POST /sync/stages/{stage}/run"""
    force: bool = Field(False, description="Re-run one-time stages that already completed")


class MarketValueRecomputeRequest(CamelModel):
    """Body of POST /market-values/recompute"""
    window_days: Optional[int] = Field(None, ge=1, description="Sales window in days")
    min_sample_size: Optional[int] = Field(None, ge=1, description="Sales needed for a multiplier")
    force_update: bool = Field(False, description="Rebuild the multiplier matrix even if cached")

    class Config:
        json_schema_extra = {
            "example": {"windowDays": 90, "minSampleSize": 5, "forceUpdate": True}
        }


# ============================================================================
# Sync Responses
# ============================================================================

class StageResultResponse(StageResult, CamelModel):
    pass


class ExecutionResponse(ExecutionInfo, CamelModel):
    pass


class StageStateResponse(StageState, CamelModel):
    pass


class RunStateResponse(RunState, CamelModel):
    stage_progress: Dict[str, StageResultResponse] = Field(default_factory=dict)


class SyncRunResponse(CamelModel):
    """Outcome of a run or resume"""
    sync_type: SyncType
    execution_id: Optional[int]
    orchestrator_id: str
    status: ExecutionStatus
    is_complete: bool
    total_stages: int
    successful_stages: int
    stage_results: Dict[str, StageResultResponse] = Field(default_factory=dict)
    skipped_stages: List[str] = Field(default_factory=list)
    duration: float = 0.0
    errors: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result) -> "SyncRunResponse":
        return cls(
            sync_type=result.sync_type,
            execution_id=result.execution_id,
            orchestrator_id=result.orchestrator_id,
            status=result.status,
            is_complete=result.is_complete,
            total_stages=result.total_stages,
            successful_stages=result.successful_stages,
            stage_results={
                name: StageResultResponse.model_validate(r.model_dump())
                for name, r in result.stage_results.items()
            },
            skipped_stages=result.skipped_stages,
            duration=result.duration_seconds,
            errors=result.errors,
            error=result.error,
        )


class StageRunResponse(CamelModel):
    """Outcome of a single stage run or chunk"""
    execution_id: int
    status: ExecutionStatus
    stage: StageName
    is_complete: bool
    continue_from: Optional[str] = None
    result: StageResultResponse

    @classmethod
    def from_run(cls, run) -> "StageRunResponse":
        return cls(
            execution_id=run.execution_id,
            status=run.status,
            stage=run.result.stage,
            is_complete=run.result.is_complete,
            continue_from=run.result.continue_from,
            result=StageResultResponse.model_validate(run.result.model_dump()),
        )


class StopResponse(CamelModel):
    success: bool = True
    stopped_executions: int
    execution_ids: List[int] = Field(default_factory=list)
    message: str


class PlayerImportResponse(CamelModel):
    """Outcome of importing one player by id"""
    success: bool = True
    player_id: int
    message: str


class SyncStatsResponse(SyncStats, CamelModel):
    pass


class SyncStatusResponse(CamelModel):
    """GET /sync/status; which fields are set depends on `type`"""
    type: str
    is_running: Optional[bool] = None
    execution: Optional[ExecutionResponse] = None
    executions: Optional[List[ExecutionResponse]] = None
    stages: Optional[List[StageStateResponse]] = None
    stats: Optional[SyncStatsResponse] = None


class OrchestratorStatusResponse(CamelModel):
    orchestrator_id: str
    is_running: bool
    execution: Optional[ExecutionResponse] = None
    state: RunStateResponse


class MarketValueResponse(CamelModel):
    success: bool
    execution_id: Optional[int] = None
    run_id: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    records_processed: int = 0
    records_failed: int = 0
    error: Optional[str] = None


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(CamelModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    stages: List[StageStateResponse] = Field(default_factory=list)
    total_stages: int = 0
    failed_stages: int = 0
    running_executions: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.failed_stages == 0:
            self.status = "healthy"
        elif self.failed_stages < self.total_stages:
            self.status = "degraded"
        else:
            self.status = "unhealthy"
        return self


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[Any] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "SyncAlreadyRunningError",
                "detail": "Another sync run is already in progress",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
