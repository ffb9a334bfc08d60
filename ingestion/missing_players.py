"""
Import of single players by id.

Sales and listings can reference players the players import has not written
yet (new mints, players that changed segment between pages). The sales and
listings stages call `import_players_by_id` after each page for the ids the
store lacks, and `POST /sync/players/{player_id}` calls it for one id.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Iterable
import logging

from core.exceptions import SourceAPIError
from ingestion.base import MarketplaceSource
from ingestion.loaders.base import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class PlayerImportOutcome:
    imported: List[int] = field(default_factory=list)
    not_found: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)


async def import_players_by_id(
    source: MarketplaceSource,
    store: RecordStore,
    player_ids: Iterable[int]
) -> PlayerImportOutcome:
    """
    Fetch each player from the marketplace and upsert the ones it knows.

    Marketplace failures for one id are recorded in `failed` and the next id
    is tried. Store failures propagate.
    """
    outcome = PlayerImportOutcome()
    found = []

    for player_id in player_ids:
        try:
            player = await source.fetch_player(player_id)
        except SourceAPIError as e:
            logger.warning(f"Could not fetch missing player {player_id}: {e.message}")
            outcome.failed[player_id] = e.message
            continue

        if player is None:
            outcome.not_found.append(player_id)
        else:
            found.append(player)

    if found:
        await store.upsert_players(found)
        outcome.imported = [p.id for p in found]

    logger.info(
        f"Missing players: {len(outcome.imported)} imported, "
        f"{len(outcome.not_found)} unknown, {len(outcome.failed)} failed"
    )
    return outcome
