from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Boolean, BigInteger
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, StageName, StageStatus, SyncType


class SyncStageState(Base):
    """
    Tracks resumable state per stage.

    Purpose:
    - Explicit completion marker for one-time stages (completed_at)
    - Resume cursor for historical backfills
    - Watermark for incremental (live) stages

    Design:
    - One row per stage
    - cursor is the opaque continuation stored between invocations
    - watermark is the newest record timestamp already synced
    """
    __tablename__ = "sync_stages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stage_name = Column(Enum(StageName), nullable=False, unique=True)
    is_one_time = Column(Boolean, nullable=False, default=False)

    status = Column(Enum(StageStatus), default=StageStatus.PENDING, nullable=False)

    # Progress markers
    completed_at = Column(DateTime, nullable=True)
    cursor = Column(String(255), nullable=True)
    watermark = Column(DateTime, nullable=True)

    # Statistics
    last_run_at = Column(DateTime, nullable=True, index=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)

    total_runs = Column(Integer, default=0)
    total_records_processed = Column(BigInteger, default=0)
    last_records_processed = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class OrchestratorRunState(Base):
    """
    Typed run state per orchestrator id.

    Written by the orchestrator after every stage transition and every chunk;
    read by status checks and by resume.
    """
    __tablename__ = "orchestrator_run_states"

    orchestrator_id = Column(String(64), primary_key=True)
    execution_id = Column(BigInteger, nullable=True, index=True)
    sync_type = Column(Enum(SyncType), nullable=False)

    is_complete = Column(Boolean, nullable=False, default=False)
    current_stage = Column(Enum(StageName), nullable=True)
    completed_stages = Column(JSONB, nullable=False, default=list)
    stage_progress = Column(JSONB, nullable=False, default=dict)

    # In-flight chunked stage
    continue_from = Column(String(255), nullable=True)
    chunks_processed = Column(Integer, nullable=False, default=0)

    errors = Column(JSONB, nullable=False, default=list)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
