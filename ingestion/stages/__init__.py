"""
The six sync stages and their registry.

Ordering used by the orchestrator: players import, historical sales,
historical listings, market values, live sales, live listings.
"""

from typing import Dict, Type
from ingestion.stages.base import SyncStage, StageContext
from ingestion.stages.players_import import PlayersImportStage
from ingestion.stages.historical import HistoricalSalesStage, HistoricalListingsStage
from ingestion.stages.market_values import MarketValuesStage
from ingestion.stages.live import LiveSalesStage, LiveListingsStage
from models.base import StageName

STAGE_CLASSES: Dict[StageName, Type[SyncStage]] = {
    StageName.PLAYERS_IMPORT: PlayersImportStage,
    StageName.HISTORICAL_SALES: HistoricalSalesStage,
    StageName.HISTORICAL_LISTINGS: HistoricalListingsStage,
    StageName.MARKET_VALUES: MarketValuesStage,
    StageName.LIVE_SALES: LiveSalesStage,
    StageName.LIVE_LISTINGS: LiveListingsStage,
}


def build_stages(context: StageContext) -> Dict[StageName, SyncStage]:
    return {name: cls(context) for name, cls in STAGE_CLASSES.items()}


__all__ = [
    "SyncStage",
    "StageContext",
    "PlayersImportStage",
    "HistoricalSalesStage",
    "HistoricalListingsStage",
    "MarketValuesStage",
    "LiveSalesStage",
    "LiveListingsStage",
    "STAGE_CLASSES",
    "build_stages",
]
