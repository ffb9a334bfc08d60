from sqlalchemy import Column, BigInteger, String, Integer, Float, Boolean, DateTime, Enum, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, PlayerSyncStage, Confidence, ValuationMethod


class Player(Base):
    """
    Canonical player record keyed by marketplace player id.

    Purpose:
    - Basic attributes written by the players import stage
    - Market value fields written only by the market values stage

    Design:
    - market_value_estimate is NULL until a market values run touches the row
    - An estimate of exactly 0 with market_value_updated_at set is a degenerate
      result, not "no data"
    """
    __tablename__ = "players"

    id = Column(BigInteger, primary_key=True, autoincrement=False)

    # Identity
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    age = Column(Integer, nullable=True)
    overall = Column(Integer, nullable=True, index=True)
    positions = Column(JSONB, nullable=True)
    primary_position = Column(String(8), nullable=True, index=True)
    nationalities = Column(JSONB, nullable=True)
    preferred_foot = Column(String(10), nullable=True)
    height = Column(Integer, nullable=True)
    is_retired = Column(Boolean, nullable=False, default=False)

    # Attributes
    pace = Column(Integer, nullable=True)
    shooting = Column(Integer, nullable=True)
    passing = Column(Integer, nullable=True)
    dribbling = Column(Integer, nullable=True)
    defense = Column(Integer, nullable=True)
    physical = Column(Integer, nullable=True)
    goalkeeping = Column(Integer, nullable=True)
    resistance = Column(Integer, nullable=True)

    # Ownership
    owner_wallet_address = Column(String(64), nullable=True, index=True)
    owner_name = Column(String(100), nullable=True)
    club_id = Column(BigInteger, nullable=True)
    club_name = Column(String(150), nullable=True)

    # Market value
    market_value_estimate = Column(Float, nullable=True)
    market_value_low = Column(Float, nullable=True)
    market_value_high = Column(Float, nullable=True)
    market_value_confidence = Column(Enum(Confidence), nullable=True)
    market_value_method = Column(Enum(ValuationMethod), nullable=True)
    market_value_sample_size = Column(Integer, nullable=True)
    market_value_updated_at = Column(DateTime, nullable=True)

    # Pipeline tracking
    sync_stage = Column(Enum(PlayerSyncStage), nullable=False, default=PlayerSyncStage.BASIC_IMPORTED)
    basic_data_synced_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_player_bucket", "primary_position", "age", "overall"),
        Index("idx_player_market_value", "market_value_estimate", "market_value_updated_at"),
    )
