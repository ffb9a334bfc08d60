"""
Incremental (live) sales and listings.

Fetch newest-first and stop at the first record that is not newer than the
stage's watermark. The watermark only moves once a walk has reached it (or
run out of pages) in a run that neither failed nor was cancelled. A walk cut
short by the page budget leaves a resume cursor in stage state holding the
next keyset cursor and the newest timestamp seen so far; the next run picks
the walk up there and reports is_complete=False until it catches up.
"""

from datetime import datetime
from typing import Optional, List, Any, Dict
import json
import logging

from core.config import settings
from ingestion.progress import ProgressReporter
from ingestion.stages.base import SyncStage
from models.base import StageName, ResourceType
from schemas.sync import StageOptions, StageResult, StageState

logger = logging.getLogger(__name__)


def encode_walk(before: Optional[str], newest: Optional[datetime]) -> str:
    return json.dumps(
        {"before": before, "newest": newest.isoformat() if newest else None},
        sort_keys=True,
        separators=(",", ":")
    )


def decode_walk(value: Optional[str]) -> Optional[Dict[str, Any]]:
    """Resume cursor persisted by an unfinished walk, None when there is none"""
    if not value:
        return None
    data = json.loads(value)
    newest = data.get("newest")
    return {
        "before": data.get("before"),
        "newest": datetime.fromisoformat(newest) if newest else None,
    }


class LiveImportStage(SyncStage):
    resource: ResourceType

    def __init__(self, context, page_size: Optional[int] = None):
        super().__init__(context)
        self.page_size = page_size or settings.LISTINGS_PAGE_SIZE

    def writer(self):
        raise NotImplementedError

    @staticmethod
    def timestamp_of(record) -> Optional[datetime]:
        raise NotImplementedError

    def _resume_point(self, state: StageState) -> Optional[Dict[str, Any]]:
        try:
            return decode_walk(state.cursor)
        except (ValueError, TypeError, AttributeError) as e:
            # The watermark has not moved, so walking again from the top loses nothing
            logger.warning(f"[{self.display_name}] Discarding unreadable resume cursor {state.cursor!r}: {e}")
            return None

    async def execute(
        self,
        state: StageState,
        options: StageOptions,
        result: StageResult,
        reporter: ProgressReporter
    ):
        watermark = state.watermark
        newest = watermark
        budget = self.page_budget(options)
        cursor = None
        pages_fetched = 0
        caught_up = False

        resume = self._resume_point(state) if watermark is not None else None
        if resume is not None:
            cursor = resume["before"]
            if resume["newest"] is not None and (newest is None or resume["newest"] > newest):
                newest = resume["newest"]
            logger.info(f"[{self.display_name}] Resuming unfinished walk before {cursor}")

        if watermark is None:
            # Nothing synced yet: take the newest page and start tracking from there
            logger.info(f"[{self.display_name}] No watermark yet, syncing the newest page only")
            budget = 1
            caught_up = True

        while pages_fetched < budget:
            await self.check_cancelled(options)

            page = await self.source.fetch_page(self.resource, cursor, self.page_size, order="DESC")
            pages_fetched += 1
            self.record_page_failures(page, result)

            fresh: List[Any] = []
            reached_watermark = False
            for record in page.records:
                ts = self.timestamp_of(record)
                if watermark is not None and ts is not None and ts <= watermark:
                    reached_watermark = True
                    continue
                fresh.append(record)
                if ts is not None and (newest is None or ts > newest):
                    newest = ts

            await self.write_in_batches(fresh, self.writer(), result)
            await self.import_missing_players(fresh, result)
            reporter.progress(
                result.records_processed,
                result.records_failed,
                current=pages_fetched,
                message=f"{result.records_processed} new {self.resource.value}"
            )

            cursor = page.next_cursor
            if reached_watermark or page.is_last:
                caught_up = True
                break
            # Checkpoint in memory; stage state is saved however the run ends
            state.cursor = encode_walk(cursor, newest)

        result.metadata["pages_fetched"] = pages_fetched
        result.metadata["previous_watermark"] = watermark.isoformat() if watermark else None

        if not caught_up:
            result.is_complete = False
            result.continue_from = state.cursor
            logger.info(
                f"[{self.display_name}] Page budget used before reaching the watermark, "
                f"next run continues before {cursor}"
            )
            return

        state.cursor = None
        if newest is not None and newest != watermark:
            state.watermark = newest
            result.metadata["watermark"] = newest.isoformat()
            logger.info(f"[{self.display_name}] Watermark advanced to {newest.isoformat()}")


class LiveSalesStage(LiveImportStage):
    name = StageName.LIVE_SALES
    display_name = "Live Sales"
    resource = ResourceType.SALES

    def writer(self):
        return self.store.upsert_sales

    @staticmethod
    def timestamp_of(record) -> Optional[datetime]:
        return record.purchased_at


class LiveListingsStage(LiveImportStage):
    name = StageName.LIVE_LISTINGS
    display_name = "Live Listings"
    resource = ResourceType.LISTINGS

    def writer(self):
        return self.store.upsert_listings

    @staticmethod
    def timestamp_of(record) -> Optional[datetime]:
        return record.listed_at
