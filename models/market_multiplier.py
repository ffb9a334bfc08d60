from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Integer, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from models.base import Base, MultiplierRunStatus


class MultiplierRun(Base):
    """
    One build of the position x age x overall multiplier matrix.

    The matrix itself is derived data; the latest completed row's `cells`
    snapshot is reused by later market value runs when the sales corpus
    fingerprint is unchanged and no forced rebuild was requested.
    """
    __tablename__ = "market_multiplier_runs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    status = Column(Enum(MultiplierRunStatus), default=MultiplierRunStatus.RUNNING, nullable=False)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    window_days = Column(Integer, nullable=False)
    min_sample_size = Column(Integer, nullable=False)
    corpus_fingerprint = Column(String(128), nullable=True, index=True)

    metrics = Column(JSONB, nullable=True)
    cells = Column(JSONB, nullable=True)

    error_message = Column(Text, nullable=True)
