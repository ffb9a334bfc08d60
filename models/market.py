from sqlalchemy import Column, BigInteger, String, Integer, Float, DateTime, Index
from datetime import datetime
from models.base import Base


class Sale(Base):
    """
    Completed marketplace purchase keyed by listing resource id.

    player_age / player_overall / player_position are captured at time of
    sale; the multiplier model reads these, never the player's current
    attributes.
    """
    __tablename__ = "sales"

    listing_resource_id = Column(BigInteger, primary_key=True, autoincrement=False)
    player_id = Column(BigInteger, nullable=False, index=True)

    price = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default="BOUGHT")
    seller_address = Column(String(64), nullable=True)
    buyer_address = Column(String(64), nullable=True)

    listed_at = Column(DateTime, nullable=True)
    purchased_at = Column(DateTime, nullable=True, index=True)

    # Player snapshot
    player_age = Column(Integer, nullable=True)
    player_overall = Column(Integer, nullable=True)
    player_position = Column(String(8), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_sale_bucket", "player_position", "player_age", "player_overall"),
    )


class Listing(Base):
    """Open marketplace offer keyed by listing resource id."""
    __tablename__ = "listings"

    listing_resource_id = Column(BigInteger, primary_key=True, autoincrement=False)
    player_id = Column(BigInteger, nullable=False, index=True)

    price = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default="AVAILABLE")
    seller_address = Column(String(64), nullable=True)

    listed_at = Column(DateTime, nullable=True, index=True)

    player_age = Column(Integer, nullable=True)
    player_overall = Column(Integer, nullable=True)
    player_position = Column(String(8), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
