"""
One-time historical backfills of sales and listings.

Both stages walk the marketplace newest-first with a keyset cursor that is
checkpointed into stage state after every written page, so an interrupted
backfill resumes where it stopped. Completion sets the stage's explicit
completion marker and seeds the matching live stage's watermark.
Players a page references but the store lacks are imported by id once the
page is written.
"""

from datetime import datetime
from typing import Optional, Any, Callable, Awaitable, List
import logging

from core.config import settings
from ingestion.progress import ProgressReporter
from ingestion.stages.base import SyncStage
from models.base import StageName, ResourceType
from schemas.sync import StageOptions, StageResult, StageState

logger = logging.getLogger(__name__)


class HistoricalImportStage(SyncStage):
    one_time = True
    chunkable = True

    resource: ResourceType
    live_stage: StageName

    def __init__(self, context, page_size: Optional[int] = None):
        super().__init__(context)
        self.page_size = page_size or settings.LISTINGS_PAGE_SIZE

    def writer(self) -> Callable[[List[Any]], Awaitable[int]]:
        raise NotImplementedError

    @staticmethod
    def timestamp_of(record) -> Optional[datetime]:
        raise NotImplementedError

    async def execute(
        self,
        state: StageState,
        options: StageOptions,
        result: StageResult,
        reporter: ProgressReporter
    ):
        if options.continue_from is not None:
            cursor = options.continue_from
        elif options.force:
            cursor = None
        else:
            cursor = state.cursor

        if options.force and options.continue_from is None:
            logger.info(f"[{self.display_name}] Forced re-import from the newest record")
            state.completed_at = None
            state.watermark = None

        budget = self.page_budget(options)
        pages_fetched = 0
        finished = False

        while pages_fetched < budget:
            await self.check_cancelled(options)

            page = await self.source.fetch_page(self.resource, cursor, self.page_size, order="DESC")
            pages_fetched += 1

            self.record_page_failures(page, result)
            await self.write_in_batches(page.records, self.writer(), result)
            await self.import_missing_players(page.records, result)

            for record in page.records:
                ts = self.timestamp_of(record)
                if ts is not None and (state.watermark is None or ts > state.watermark):
                    state.watermark = ts

            cursor = page.next_cursor
            state.cursor = cursor
            await self.store.save_stage_state(state)

            reporter.progress(
                result.records_processed,
                result.records_failed,
                current=pages_fetched,
                message=f"{result.records_processed} {self.resource.value} imported"
            )

            if page.is_last:
                finished = True
                break

        result.metadata["pages_fetched"] = pages_fetched

        if finished:
            state.completed_at = datetime.utcnow()
            state.cursor = None
            result.is_complete = True
            result.continue_from = None
            await self._seed_live_watermark(state.watermark)
            logger.info(f"[{self.display_name}] Backfill complete")
        else:
            result.is_complete = False
            result.continue_from = cursor

    async def _seed_live_watermark(self, watermark: Optional[datetime]):
        if watermark is None:
            return
        live_state = await self.store.get_stage_state(self.live_stage)
        if live_state is None:
            live_state = StageState(stage_name=self.live_stage)
        if live_state.watermark is None:
            live_state.watermark = watermark
            await self.store.save_stage_state(live_state)
            logger.info(f"[{self.display_name}] Seeded {self.live_stage.value} watermark at {watermark.isoformat()}")


class HistoricalSalesStage(HistoricalImportStage):
    name = StageName.HISTORICAL_SALES
    display_name = "Historical Sales"
    resource = ResourceType.SALES
    live_stage = StageName.LIVE_SALES

    def writer(self):
        return self.store.upsert_sales

    @staticmethod
    def timestamp_of(record) -> Optional[datetime]:
        return record.purchased_at


class HistoricalListingsStage(HistoricalImportStage):
    name = StageName.HISTORICAL_LISTINGS
    display_name = "Historical Listings"
    resource = ResourceType.LISTINGS
    live_stage = StageName.LIVE_LISTINGS

    def writer(self):
        return self.store.upsert_listings

    @staticmethod
    def timestamp_of(record) -> Optional[datetime]:
        return record.listed_at
