"""
Pydantic schemas shared by the stages, the orchestrator and the record store
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import (
    StageName, StageStatus, SyncType, ExecutionStatus, ExecutionType, MultiplierRunStatus
)


# Metadata counters that add up across chunks instead of being replaced
SUMMED_METADATA = ("missing_players_imported", "missing_players_unresolved")


class StageResult(BaseModel):
    """Uniform outcome of one stage (or one chunk of a stage)"""
    stage: StageName
    success: bool = True
    duration_seconds: float = 0.0
    records_processed: int = 0
    records_failed: int = 0
    errors: List[str] = Field(default_factory=list)

    # Chunked stages: False while a continuation remains
    is_complete: bool = True
    continue_from: Optional[str] = None

    skipped: bool = False
    cancelled: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def absorb(self, chunk: "StageResult") -> "StageResult":
        """Fold a chunk result into this running total"""
        self.success = self.success and chunk.success
        self.duration_seconds = round(self.duration_seconds + chunk.duration_seconds, 3)
        self.records_processed += chunk.records_processed
        self.records_failed += chunk.records_failed
        self.errors.extend(chunk.errors)
        self.is_complete = chunk.is_complete
        self.continue_from = chunk.continue_from
        self.skipped = chunk.skipped
        self.cancelled = self.cancelled or chunk.cancelled
        for key, value in chunk.metadata.items():
            if key in SUMMED_METADATA and key in self.metadata:
                self.metadata[key] = self.metadata[key] + value
            else:
                self.metadata[key] = value
        return self

    @property
    def first_error(self) -> Optional[str]:
        return self.errors[0] if self.errors else None


class StageOptions(BaseModel):
    """Per-invocation knobs for a stage"""
    force: bool = False
    max_pages: Optional[int] = None
    continue_from: Optional[str] = None
    execution_id: Optional[int] = None

    # market values
    window_days: Optional[int] = None
    min_sample_size: Optional[int] = None
    force_update: bool = False
    only_degenerate: bool = False
    batch_size: Optional[int] = None


class StageState(BaseModel):
    """Persisted state of one stage (completion marker, cursor, watermark)"""
    stage_name: StageName
    is_one_time: bool = False
    status: StageStatus = StageStatus.PENDING
    completed_at: Optional[datetime] = None
    cursor: Optional[str] = None
    watermark: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    total_runs: int = 0
    total_records_processed: int = 0
    last_records_processed: int = 0
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class RunState(BaseModel):
    """Typed run state for one orchestrator id"""
    orchestrator_id: str
    execution_id: Optional[int] = None
    sync_type: SyncType
    is_complete: bool = False
    current_stage: Optional[StageName] = None
    completed_stages: List[StageName] = Field(default_factory=list)
    stage_progress: Dict[str, StageResult] = Field(default_factory=dict)
    continue_from: Optional[str] = None
    chunks_processed: int = 0
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @field_validator("completed_stages", "errors", mode="before")
    @classmethod
    def none_to_list(cls, v):
        return v or []

    @field_validator("stage_progress", mode="before")
    @classmethod
    def none_to_dict(cls, v):
        return v or {}

    class Config:
        from_attributes = True


class ExecutionInfo(BaseModel):
    """A sync execution row"""
    id: int
    orchestrator_id: Optional[str] = None
    sync_type: Optional[SyncType] = None
    execution_type: ExecutionType = ExecutionType.MANUAL
    triggered_by: Optional[str] = None
    status: ExecutionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_processed: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
    stage_results: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("stage_results", mode="before")
    @classmethod
    def none_to_dict(cls, v):
        return v or {}

    @field_validator("records_processed", "records_failed", mode="before")
    @classmethod
    def none_to_zero(cls, v):
        return v or 0

    class Config:
        from_attributes = True


class MultiplierRunInfo(BaseModel):
    """A multiplier matrix build and its cached cells"""
    run_id: str
    status: MultiplierRunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    window_days: int
    min_sample_size: int
    corpus_fingerprint: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    cells: List[Dict[str, Any]] = Field(default_factory=list)
    error_message: Optional[str] = None

    @field_validator("run_id", mode="before")
    @classmethod
    def stringify_run_id(cls, v):
        return str(v)

    @field_validator("metrics", mode="before")
    @classmethod
    def none_to_dict(cls, v):
        return v or {}

    @field_validator("cells", mode="before")
    @classmethod
    def none_to_list(cls, v):
        return v or []

    class Config:
        from_attributes = True


class SyncStats(BaseModel):
    """Counters behind the `stats` status view"""
    total_players: int = 0
    players_with_market_value: int = 0
    players_unpriced: int = 0
    degenerate_market_values: int = 0
    total_sales: int = 0
    total_listings: int = 0
    executions_by_status: Dict[str, int] = Field(default_factory=dict)
    last_completed_at: Optional[datetime] = None
