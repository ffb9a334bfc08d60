"""
Pydantic schemas for marketplace API records.

Upstream payloads are camelCase and nested; `from_api` flattens them into
the column layout of the players/sales/listings tables. Anything that fails
validation here is a per-record malformation, not a page failure.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import Confidence, ValuationMethod, PlayerSyncStage


def epoch_ms_to_datetime(value: Any) -> Optional[datetime]:
    """Marketplace timestamps are epoch milliseconds"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.utcfromtimestamp(int(value) / 1000)


def datetime_to_epoch_ms(value: datetime) -> int:
    return int((value - datetime(1970, 1, 1)).total_seconds() * 1000)


class PlayerRecord(BaseModel):
    """Basic player attributes (market fields are never part of an import)"""
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    age: Optional[int] = None
    overall: Optional[int] = None
    positions: List[str] = Field(default_factory=list)
    primary_position: Optional[str] = None
    nationalities: List[str] = Field(default_factory=list)
    preferred_foot: Optional[str] = None
    height: Optional[int] = None
    is_retired: bool = False

    pace: Optional[int] = None
    shooting: Optional[int] = None
    passing: Optional[int] = None
    dribbling: Optional[int] = None
    defense: Optional[int] = None
    physical: Optional[int] = None
    goalkeeping: Optional[int] = None
    resistance: Optional[int] = None

    owner_wallet_address: Optional[str] = None
    owner_name: Optional[str] = None
    club_id: Optional[int] = None
    club_name: Optional[str] = None

    @field_validator("primary_position", mode="before")
    @classmethod
    def upper_position(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("positions", "nationalities", mode="before")
    @classmethod
    def none_to_list(cls, v):
        return v or []

    @classmethod
    def from_api(cls, payload: Dict[str, Any], is_retired: bool = False) -> "PlayerRecord":
        metadata = payload.get("metadata") or {}
        owner = payload.get("ownedBy") or {}
        club = (payload.get("activeContract") or {}).get("club") or {}
        positions = metadata.get("positions") or []

        return cls(
            id=payload.get("id"),
            first_name=metadata.get("firstName"),
            last_name=metadata.get("lastName"),
            age=metadata.get("age"),
            overall=metadata.get("overall"),
            positions=positions,
            primary_position=positions[0] if positions else None,
            nationalities=metadata.get("nationalities") or [],
            preferred_foot=metadata.get("preferredFoot"),
            height=metadata.get("height"),
            is_retired=is_retired,
            pace=metadata.get("pace"),
            shooting=metadata.get("shooting"),
            passing=metadata.get("passing"),
            dribbling=metadata.get("dribbling"),
            defense=metadata.get("defense"),
            physical=metadata.get("physical"),
            goalkeeping=metadata.get("goalkeeping"),
            resistance=metadata.get("resistance"),
            owner_wallet_address=owner.get("walletAddress"),
            owner_name=owner.get("name"),
            club_id=club.get("id"),
            club_name=club.get("name"),
        )

    class Config:
        from_attributes = True


class SaleRecord(BaseModel):
    """A completed purchase with the player's attributes at time of sale"""
    listing_resource_id: int
    player_id: int
    price: float = Field(..., ge=0)
    status: str = "BOUGHT"
    seller_address: Optional[str] = None
    buyer_address: Optional[str] = None
    listed_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None
    player_age: Optional[int] = None
    player_overall: Optional[int] = None
    player_position: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "SaleRecord":
        player = payload.get("player") or {}
        metadata = player.get("metadata") or {}
        positions = metadata.get("positions") or []

        return cls(
            listing_resource_id=payload.get("listingResourceId"),
            player_id=player.get("id"),
            price=payload.get("price"),
            status=payload.get("status") or "BOUGHT",
            seller_address=payload.get("sellerAddress"),
            buyer_address=payload.get("buyerAddress"),
            listed_at=epoch_ms_to_datetime(payload.get("createdDateTime")),
            purchased_at=epoch_ms_to_datetime(payload.get("purchaseDateTime")),
            player_age=metadata.get("age"),
            player_overall=metadata.get("overall"),
            player_position=positions[0].upper() if positions else None,
        )

    class Config:
        from_attributes = True


class ListingRecord(BaseModel):
    """An open offer on the marketplace"""
    listing_resource_id: int
    player_id: int
    price: float = Field(..., ge=0)
    status: str = "AVAILABLE"
    seller_address: Optional[str] = None
    listed_at: Optional[datetime] = None
    player_age: Optional[int] = None
    player_overall: Optional[int] = None
    player_position: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "ListingRecord":
        player = payload.get("player") or {}
        metadata = player.get("metadata") or {}
        positions = metadata.get("positions") or []

        return cls(
            listing_resource_id=payload.get("listingResourceId"),
            player_id=player.get("id"),
            price=payload.get("price"),
            status=payload.get("status") or "AVAILABLE",
            seller_address=payload.get("sellerAddress"),
            listed_at=epoch_ms_to_datetime(payload.get("createdDateTime")),
            player_age=metadata.get("age"),
            player_overall=metadata.get("overall"),
            player_position=positions[0].upper() if positions else None,
        )

    class Config:
        from_attributes = True


class MarketValueUpdate(BaseModel):
    """Market value fields written back to a player by the market values stage"""
    player_id: int
    estimate: Optional[float] = None
    low: Optional[float] = None
    high: Optional[float] = None
    confidence: Optional[Confidence] = None
    method: Optional[ValuationMethod] = None
    sample_size: Optional[int] = None
    sync_stage: PlayerSyncStage
    updated_at: datetime
