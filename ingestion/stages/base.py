"""
Stage executor base class.

Every stage honours the same contract: `run(options) -> StageResult`, never
raising. Per-record problems are counted and collected; store failures and
exhausted retries end the stage with success=False; a stop request observed
at a page boundary ends it with cancelled=True. Records already written stay
written in every case.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence, Any
import time
import logging

from core.config import settings
from core.exceptions import SyncError, SyncCancelledError, StoreError
from ingestion.base import MarketplaceSource, Page
from ingestion.loaders.base import RecordStore
from ingestion.missing_players import import_players_by_id
from ingestion.progress import ProgressBroadcaster, ProgressReporter
from models.base import StageName, StageStatus
from schemas.sync import StageOptions, StageResult, StageState

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Collaborators shared by every stage of one orchestrator"""
    source: MarketplaceSource
    store: RecordStore
    broadcaster: Optional[ProgressBroadcaster] = None
    engine: Any = None
    write_batch_size: int = settings.DB_WRITE_BATCH_SIZE
    max_pages: int = settings.STAGE_MAX_PAGES
    import_missing_players: bool = settings.IMPORT_MISSING_PLAYERS


class SyncStage(ABC):
    """
    Base class for the six sync stages.

    Class attributes:
        name: Stage identifier persisted in stage state and results
        display_name: Log prefix
        one_time: Short-circuits once its completion marker is set (unless forced)
        chunkable: Accepts max_pages / continue_from and may return is_complete=False
    """

    name: StageName
    display_name: str = "Stage"
    one_time: bool = False
    chunkable: bool = False

    def __init__(self, context: StageContext):
        self.context = context
        self.store = context.store
        self.source = context.source

    # ------------------------------------------------------------------
    # Template
    # ------------------------------------------------------------------

    async def run(self, options: Optional[StageOptions] = None) -> StageResult:
        options = options or StageOptions()
        started = time.perf_counter()
        result = StageResult(stage=self.name)
        reporter = ProgressReporter(self.context.broadcaster, options.execution_id, self.name.value)

        try:
            state = await self.store.get_stage_state(self.name)
        except StoreError as e:
            return self._hard_failure(result, e, started, reporter)

        if state is None:
            state = StageState(stage_name=self.name, is_one_time=self.one_time)

        if self.one_time and state.completed_at and not options.force:
            logger.info(f"[{self.display_name}] Already completed at {state.completed_at.isoformat()}, skipping")
            result.skipped = True
            result.metadata["completed_at"] = state.completed_at.isoformat()
            result.duration_seconds = round(time.perf_counter() - started, 3)
            reporter.completed(0, message=f"{self.name.value} already completed")
            return result

        logger.info(f"[{self.display_name}] Starting")
        reporter.started()
        state.status = StageStatus.RUNNING
        state.last_run_at = datetime.utcnow()

        try:
            await self.execute(state, options, result, reporter)

        except SyncCancelledError:
            logger.info(f"[{self.display_name}] Stop requested, leaving after {result.records_processed} records")
            result.cancelled = True
            result.is_complete = False

        except SyncError as e:
            logger.error(
                f"[{self.display_name}] Hard failure: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            result.success = False
            result.is_complete = False
            result.errors.append(e.message)

        except Exception as e:
            logger.exception(f"[{self.display_name}] Unexpected error")
            result.success = False
            result.is_complete = False
            result.errors.append(f"Unexpected error: {type(e).__name__}: {str(e)}")

        result.duration_seconds = round(time.perf_counter() - started, 3)

        try:
            await self._finalize_state(state, result)
        except StoreError as e:
            logger.error(f"[{self.display_name}] Could not save stage state: {e.message}")
            result.success = False
            result.errors.append(e.message)

        if result.cancelled:
            reporter.cancelled(result.records_processed, result.records_failed)
        elif result.success:
            reporter.completed(result.records_processed, result.records_failed)
        else:
            reporter.failed(result.first_error or "failed", result.records_processed, result.records_failed)

        logger.info(
            f"[{self.display_name}] Finished: success={result.success}, "
            f"processed={result.records_processed}, failed={result.records_failed}, "
            f"complete={result.is_complete}, duration={result.duration_seconds}s"
        )
        return result

    @abstractmethod
    async def execute(
        self,
        state: StageState,
        options: StageOptions,
        result: StageResult,
        reporter: ProgressReporter
    ):
        """
        Do the stage's work, mutating `state` and `result` in place.

        Raise SyncCancelledError on a stop request and any SyncError on a
        hard failure; everything already added to `result` is kept.
        """

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _hard_failure(self, result: StageResult, error: SyncError, started: float, reporter: ProgressReporter) -> StageResult:
        logger.error(f"[{self.display_name}] Hard failure: {error.message}")
        result.success = False
        result.is_complete = False
        result.errors.append(error.message)
        result.duration_seconds = round(time.perf_counter() - started, 3)
        reporter.failed(error.message)
        return result

    async def _finalize_state(self, state: StageState, result: StageResult):
        now = datetime.utcnow()
        state.total_runs += 1
        state.last_records_processed = result.records_processed
        state.total_records_processed += result.records_processed

        if result.cancelled:
            state.status = StageStatus.CANCELLED
        elif result.success:
            state.status = StageStatus.COMPLETED if result.is_complete else StageStatus.RUNNING
            state.last_success_at = now
            state.error_message = None
        else:
            state.status = StageStatus.FAILED
            state.last_failure_at = now
            state.error_message = result.first_error

        await self.store.save_stage_state(state)

    async def is_cancelled(self, options: StageOptions) -> bool:
        if options.execution_id is None:
            return False
        return await self.store.is_execution_cancelled(options.execution_id)

    async def check_cancelled(self, options: StageOptions):
        """Called at every page boundary"""
        if await self.is_cancelled(options):
            raise SyncCancelledError(
                f"{self.name.value} cancelled",
                context={"execution_id": options.execution_id, "stage": self.name.value}
            )

    def page_budget(self, options: StageOptions) -> int:
        if options.max_pages is not None:
            return options.max_pages
        return self.context.max_pages

    def record_page_failures(self, page: Page, result: StageResult):
        for failure in page.failures:
            result.records_failed += 1
            result.errors.append(f"{self.name.value} {failure}")

    async def write_in_batches(
        self,
        records: Sequence[Any],
        writer: Callable[[List[Any]], Awaitable[int]],
        result: StageResult
    ):
        """
        Upsert `records` in store batches.

        A failing batch is counted as failed and re-raised; later batches are
        never attempted and therefore never counted.
        """
        size = self.context.write_batch_size
        for i in range(0, len(records), size):
            batch = list(records[i:i + size])
            try:
                written = await writer(batch)
            except StoreError:
                result.records_failed += len(batch)
                raise
            result.records_processed += written

    async def import_missing_players(self, records: Sequence[Any], result: StageResult):
        """
        Import players that written sales or listings reference but the store
        does not hold. Players the marketplace cannot serve are counted in
        metadata and retried the next time a record references them.
        """
        if not self.context.import_missing_players or not records:
            return

        referenced = {r.player_id for r in records if r.player_id}
        missing = await self.store.missing_player_ids(sorted(referenced))
        if not missing:
            return

        logger.info(f"[{self.display_name}] {len(missing)} referenced players missing, importing")
        outcome = await import_players_by_id(self.source, self.store, missing)

        metadata = result.metadata
        metadata["missing_players_imported"] = metadata.get("missing_players_imported", 0) + len(outcome.imported)
        if outcome.not_found or outcome.failed:
            unresolved = metadata.setdefault("missing_players_unresolved", [])
            unresolved.extend(outcome.not_found)
            unresolved.extend(outcome.failed)
