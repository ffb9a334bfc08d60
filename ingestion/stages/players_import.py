"""
Players import - basic attributes of active and retired players
"""

import asyncio
import json
from typing import Dict, Any, Optional, List
import logging

from core.exceptions import StageConfigurationError
from ingestion.base import Page
from ingestion.progress import ProgressReporter
from ingestion.stages.base import SyncStage
from models.base import StageName, ResourceType
from core.config import settings
from schemas.sync import StageOptions, StageResult, StageState

logger = logging.getLogger(__name__)

SEGMENTS = {"active": False, "retired": True}


def initial_cursor() -> Dict[str, Dict[str, Any]]:
    return {segment: {"before": None, "done": False} for segment in SEGMENTS}


def decode_cursor(value: Optional[str]) -> Dict[str, Dict[str, Any]]:
    if not value:
        return initial_cursor()
    try:
        data = json.loads(value)
        cursor = initial_cursor()
        for segment in SEGMENTS:
            if segment in data:
                cursor[segment] = {
                    "before": data[segment].get("before"),
                    "done": bool(data[segment].get("done", False)),
                }
        return cursor
    except (ValueError, TypeError, AttributeError) as e:
        raise StageConfigurationError(
            "Invalid players continuation cursor",
            context={"continue_from": value},
            original_exception=e
        )


def encode_cursor(cursor: Dict[str, Dict[str, Any]]) -> str:
    return json.dumps(cursor, sort_keys=True, separators=(",", ":"))


class PlayersImportStage(SyncStage):
    """
    Paginates active and retired players in parallel and upserts their basic
    attributes. Market value fields are never written here.

    The continuation cursor is a small JSON document holding the keyset
    cursor and a done flag per segment.
    """

    name = StageName.PLAYERS_IMPORT
    display_name = "Players"
    chunkable = True

    def __init__(self, context, page_size: Optional[int] = None):
        super().__init__(context)
        self.page_size = page_size or settings.PLAYERS_PAGE_SIZE

    async def _fetch_segment(self, segment: str, before: Optional[str]) -> Page:
        return await self.source.fetch_page(
            ResourceType.PLAYERS,
            before,
            self.page_size,
            is_retired=SEGMENTS[segment]
        )

    async def execute(
        self,
        state: StageState,
        options: StageOptions,
        result: StageResult,
        reporter: ProgressReporter
    ):
        cursor = decode_cursor(options.continue_from)
        budget = self.page_budget(options)
        pages_fetched = 0

        while pages_fetched < budget:
            pending: List[str] = [s for s in SEGMENTS if not cursor[s]["done"]]
            if not pending:
                break

            await self.check_cancelled(options)

            batch = pending[:budget - pages_fetched]
            pages = await asyncio.gather(
                *(self._fetch_segment(segment, cursor[segment]["before"]) for segment in batch)
            )
            pages_fetched += len(batch)

            for segment, page in zip(batch, pages):
                self.record_page_failures(page, result)
                await self.write_in_batches(page.records, self.store.upsert_players, result)

                # Advance only after the page is safely written
                if page.is_last:
                    cursor[segment] = {"before": None, "done": True}
                else:
                    cursor[segment] = {"before": page.next_cursor, "done": False}

                logger.info(
                    f"[{self.display_name}] {segment} page: {len(page.records)} players, "
                    f"{len(page.failures)} malformed, next={page.next_cursor}"
                )

            reporter.progress(
                result.records_processed,
                result.records_failed,
                current=pages_fetched,
                message=f"{result.records_processed} players imported"
            )

        done = all(cursor[s]["done"] for s in SEGMENTS)
        result.is_complete = done
        result.continue_from = None if done else encode_cursor(cursor)
        result.metadata["pages_fetched"] = pages_fetched
        state.cursor = result.continue_from
