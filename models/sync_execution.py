from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, ExecutionStatus, SyncType, ExecutionType


class SyncExecution(Base):
    """
    Tracks one orchestrator run (or one standalone stage/chunk invocation).

    Purpose:
    - Audit trail of all sync runs
    - Target of the stop operation (every RUNNING row is cancelled)
    - Per-stage results embedded as JSON, one entry per stage run

    Lifecycle:
    - Created RUNNING when a run starts
    - Terminal once status leaves RUNNING; finishing a terminal row is a no-op
    """
    __tablename__ = "sync_executions"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    orchestrator_id = Column(String(64), nullable=True, index=True)

    sync_type = Column(Enum(SyncType), nullable=True, index=True)
    execution_type = Column(Enum(ExecutionType), nullable=False, default=ExecutionType.MANUAL)
    triggered_by = Column(String(100), nullable=True)

    status = Column(Enum(ExecutionStatus), default=ExecutionStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    records_processed = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)

    # StageResult per stage name
    stage_results = Column(JSONB, nullable=True)

    __table_args__ = (
        Index("idx_sync_execution_status_started", "status", "started_at"),
    )
