"""
Market values - re-prices players through the Market Value Engine
"""

import logging

from core.exceptions import MarketValueError
from ingestion.progress import ProgressReporter
from ingestion.stages.base import SyncStage
from models.base import StageName
from schemas.sync import StageOptions, StageResult, StageState
from valuation.engine import MarketValueEngine

logger = logging.getLogger(__name__)


class MarketValuesStage(SyncStage):
    """Re-runnable; every run rebuilds (or reuses) the matrix and walks all players"""

    name = StageName.MARKET_VALUES
    display_name = "Market Values"

    @property
    def engine(self) -> MarketValueEngine:
        if self.context.engine is None:
            self.context.engine = MarketValueEngine(self.store)
        return self.context.engine

    async def execute(
        self,
        state: StageState,
        options: StageOptions,
        result: StageResult,
        reporter: ProgressReporter
    ):
        async def on_batch(processed: int, failed: int):
            reporter.progress(processed, failed, message=f"{processed} players priced")

        async def should_stop() -> bool:
            return await self.is_cancelled(options)

        outcome = await self.engine.run(
            window_days=options.window_days,
            min_sample_size=options.min_sample_size,
            force_update=options.force_update or options.force,
            only_degenerate=options.only_degenerate,
            batch_size=options.batch_size,
            on_batch=on_batch,
            should_stop=should_stop,
        )

        result.records_processed += outcome.records_processed
        result.records_failed += outcome.records_failed
        result.metadata["run_id"] = outcome.run_id
        result.metadata["metrics"] = outcome.metrics

        if outcome.cancelled:
            result.cancelled = True
            result.is_complete = False

        if not outcome.success:
            raise MarketValueError(
                outcome.error or "Market value run failed",
                context={"run_id": outcome.run_id, "errors": outcome.errors[:5]}
            )

        # Per-player pricing errors are partial failures, not a stage failure
        result.errors.extend(outcome.errors)
