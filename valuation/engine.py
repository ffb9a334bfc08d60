"""
Market Value Engine - prices every player from the multiplier matrix.

This module provides:
- Sales window selection with a wider fallback window for small corpora
- Multiplier matrix caching keyed by a fingerprint of the sales corpus
- Direct and fallback (nearest overall bucket) pricing with confidence tiers
- Batched write-back of market value fields through the record store
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Callable, Awaitable, Tuple
import hashlib
import uuid
from core.config import settings
from core.exceptions import StoreError, SyncError, StageConfigurationError
from ingestion.loaders.base import RecordStore
from models.base import Confidence, ValuationMethod, PlayerSyncStage, MultiplierRunStatus
from schemas.marketplace import PlayerRecord, SaleRecord, MarketValueUpdate
from schemas.sync import MultiplierRunInfo
from valuation.buckets import BucketScheme
from valuation.multipliers import MultiplierMatrix, build_matrix, confidence_for, lower_confidence
import logging

logger = logging.getLogger(__name__)

# Half-width of the price band per confidence tier
BAND_WIDTH = {
    Confidence.HIGH: 0.10,
    Confidence.MEDIUM: 0.20,
    Confidence.LOW: 0.35,
}


@dataclass
class ValuationConfig:
    window_days: int = 90
    fallback_window_days: int = 180
    min_corpus: int = 1000
    min_sample_size: int = 5
    central_tendency: str = "mean"
    trim_outliers: bool = False
    fallback_radius: int = 2
    batch_size: int = 100
    scheme: BucketScheme = field(default_factory=BucketScheme)

    @classmethod
    def from_settings(cls) -> "ValuationConfig":
        return cls(
            window_days=settings.MARKET_VALUE_WINDOW_DAYS,
            fallback_window_days=settings.MARKET_VALUE_FALLBACK_WINDOW_DAYS,
            min_corpus=settings.MARKET_VALUE_MIN_CORPUS,
            min_sample_size=settings.MARKET_VALUE_MIN_SAMPLE_SIZE,
            central_tendency=settings.MARKET_VALUE_CENTRAL_TENDENCY,
            trim_outliers=settings.MARKET_VALUE_TRIM_OUTLIERS,
            fallback_radius=settings.FALLBACK_SEARCH_RADIUS,
            batch_size=settings.MARKET_VALUE_BATCH_SIZE,
            scheme=BucketScheme(
                age_width=settings.AGE_BUCKET_WIDTH,
                overall_width=settings.OVERALL_BUCKET_WIDTH,
            ),
        )


@dataclass
class PlayerValuation:
    player_id: int
    estimate: float
    low: float
    high: float
    confidence: Confidence
    method: ValuationMethod
    sample_size: int
    bucket: str


@dataclass
class MarketValueRunResult:
    """Outcome of one market value run"""
    success: bool
    run_id: str
    metrics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    records_processed: int = 0
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "runId": self.run_id, "metrics": self.metrics}
        return {"success": False, "error": self.error, "runId": self.run_id}


class MarketValueEngine:
    """
    Compute a confidence-scored market value for every player.

    Recomputation is wholesale: each run re-prices every player it visits
    from a matrix that is either rebuilt or reused from the latest completed
    multiplier run with the same corpus fingerprint.
    """

    def __init__(self, store: RecordStore, config: Optional[ValuationConfig] = None):
        self.store = store
        self.config = config or ValuationConfig.from_settings()

    # ------------------------------------------------------------------
    # Matrix
    # ------------------------------------------------------------------

    async def load_sales(self, window_days: int) -> Tuple[List[SaleRecord], int]:
        """Sales inside the window, widened once when the corpus is too small"""
        now = datetime.utcnow()
        sales = await self.store.list_sales(since=now - timedelta(days=window_days))

        fallback_days = self.config.fallback_window_days
        if len(sales) < self.config.min_corpus and fallback_days > window_days:
            logger.info(
                f"Only {len(sales)} sales in the last {window_days} days, "
                f"widening window to {fallback_days} days"
            )
            sales = await self.store.list_sales(since=now - timedelta(days=fallback_days))
            window_days = fallback_days

        return sales, window_days

    def fingerprint(self, sales: List[SaleRecord], window_days: int, min_sample_size: int) -> str:
        """
        Hash of every sale field that feeds the matrix plus the matrix config.
        A sale re-upserted with a corrected price or player snapshot changes it.
        """
        digest = hashlib.sha1()
        for sale in sorted(sales, key=lambda s: s.listing_resource_id):
            digest.update(
                f"{sale.listing_resource_id}:{sale.price}:{sale.player_age}:"
                f"{sale.player_overall}:{sale.player_position}\n".encode()
            )
        parts = [
            str(len(sales)),
            str(window_days),
            str(min_sample_size),
            self.config.central_tendency,
            str(self.config.trim_outliers),
            self.config.scheme.fingerprint(),
        ]
        digest.update("|".join(parts).encode())
        return digest.hexdigest()

    @staticmethod
    def _at_least_one(name: str, value: Optional[int], default: int) -> int:
        if value is None:
            return default
        if value < 1:
            raise StageConfigurationError(f"{name} must be at least 1", context={name: value})
        return value

    async def load_matrix(
        self,
        window_days: Optional[int] = None,
        min_sample_size: Optional[int] = None,
        force_update: bool = False
    ) -> Tuple[MultiplierMatrix, Dict[str, Any]]:
        """
        Build the matrix, or reuse the cached one when the corpus is unchanged.

        Returns:
            (matrix, info) where info carries fingerprint, window and sales count
        """
        window_days = self._at_least_one("window_days", window_days, self.config.window_days)
        min_sample_size = self._at_least_one("min_sample_size", min_sample_size, self.config.min_sample_size)

        sales, window_used = await self.load_sales(window_days)
        fingerprint = self.fingerprint(sales, window_used, min_sample_size)
        info = {
            "fingerprint": fingerprint,
            "window_days": window_used,
            "min_sample_size": min_sample_size,
            "total_sales_analyzed": len(sales),
            "matrix_reused": False,
        }

        if not force_update and sales:
            cached = await self.store.get_latest_multiplier_run()
            if cached and cached.corpus_fingerprint == fingerprint and cached.cells:
                logger.info(f"Reusing multiplier matrix from run {cached.run_id}")
                info["matrix_reused"] = True
                matrix = MultiplierMatrix.from_cells(cached.cells, self.config.scheme, min_sample_size)
                return matrix, info

        matrix = build_matrix(
            sales,
            scheme=self.config.scheme,
            min_sample_size=min_sample_size,
            tendency=self.config.central_tendency,
            trim=self.config.trim_outliers,
        )
        logger.info(
            f"Built multiplier matrix: {len(matrix.cells)} cells, "
            f"{len(matrix.priced_cells)} with multipliers, baseline {matrix.baseline}"
        )
        return matrix, info

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def value_player(self, matrix: MultiplierMatrix, player: PlayerRecord) -> Optional[PlayerValuation]:
        """Price one player, None when neither a direct nor a fallback cell exists"""
        baseline_price = matrix.baseline_price
        if baseline_price is None:
            return None

        key = self.config.scheme.key_for(player.primary_position, player.age, player.overall)
        if key is None:
            return None

        cell = matrix.lookup(key)
        if cell is not None:
            method = ValuationMethod.DIRECT
            confidence = confidence_for(cell.sample_count)
        else:
            cell = matrix.nearest(key, self.config.fallback_radius)
            if cell is None:
                return None
            method = ValuationMethod.FALLBACK
            confidence = lower_confidence(confidence_for(cell.sample_count))

        estimate = round(baseline_price * cell.multiplier, 2)
        band = BAND_WIDTH[confidence]

        return PlayerValuation(
            player_id=player.id,
            estimate=estimate,
            low=round(estimate * (1 - band), 2),
            high=round(estimate * (1 + band), 2),
            confidence=confidence,
            method=method,
            sample_size=cell.sample_count,
            bucket=str(cell.key),
        )

    def _to_update(self, player: PlayerRecord, valuation: Optional[PlayerValuation], now: datetime) -> MarketValueUpdate:
        if valuation is None:
            return MarketValueUpdate(
                player_id=player.id,
                sync_stage=PlayerSyncStage.MARKET_UNPRICED,
                updated_at=now,
            )
        return MarketValueUpdate(
            player_id=player.id,
            estimate=valuation.estimate,
            low=valuation.low,
            high=valuation.high,
            confidence=valuation.confidence,
            method=valuation.method,
            sample_size=valuation.sample_size,
            sync_stage=PlayerSyncStage.MARKET_CALCULATED,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        window_days: Optional[int] = None,
        min_sample_size: Optional[int] = None,
        force_update: bool = False,
        only_degenerate: bool = False,
        batch_size: Optional[int] = None,
        on_batch: Optional[Callable[[int, int], Awaitable[None]]] = None,
        should_stop: Optional[Callable[[], Awaitable[bool]]] = None
    ) -> MarketValueRunResult:
        """
        Re-price players in id order, one batch at a time.

        Args:
            only_degenerate: Only players holding an estimate of exactly 0
            on_batch: Awaited after every written batch with (processed, failed)
            should_stop: Awaited before every batch; True stops the run

        Returns:
            MarketValueRunResult; never raises for store or pricing failures
        """
        run_id = str(uuid.uuid4())
        started_at = datetime.utcnow()
        result = MarketValueRunResult(success=True, run_id=run_id)

        logger.info(f"Market value run {run_id} starting (force_update={force_update})")

        try:
            batch_size = self._at_least_one("batch_size", batch_size, self.config.batch_size)
            matrix, info = await self.load_matrix(window_days, min_sample_size, force_update)
        except SyncError as e:
            logger.error(f"Market value run {run_id} could not load sales: {e.message}")
            result.success = False
            result.error = e.message
            result.errors.append(e.message)
            return result

        metrics = {
            "total_combinations_analyzed": len(matrix.cells),
            "combinations_with_multiplier": len(matrix.priced_cells),
            "sales_data_window_days": info["window_days"],
            "total_sales_analyzed": info["total_sales_analyzed"],
            "matrix_reused": info["matrix_reused"],
            "baseline_bucket": str(matrix.baseline) if matrix.baseline else None,
            "baseline_price": matrix.baseline_price,
            "players_priced_direct": 0,
            "players_priced_fallback": 0,
            "players_unpriced": 0,
            "degenerate_values": 0,
            "batches": 0,
        }
        result.metrics = metrics

        if info["total_sales_analyzed"] == 0:
            logger.info("No sales in window, nothing to price")
            metrics["players_processed"] = 0
            await self._record_run(run_id, started_at, info, metrics, matrix, result)
            return result

        after_id: Optional[int] = None
        while True:
            if should_stop is not None and await should_stop():
                logger.info(f"Market value run {run_id} stopped")
                result.cancelled = True
                break

            try:
                players = await self.store.list_players(after_id, batch_size, only_degenerate)
            except StoreError as e:
                result.success = False
                result.error = e.message
                result.errors.append(e.message)
                break

            if not players:
                break
            after_id = players[-1].id

            now = datetime.utcnow()
            updates: List[MarketValueUpdate] = []
            for player in players:
                try:
                    valuation = self.value_player(matrix, player)
                except (ValueError, TypeError, ArithmeticError) as e:
                    result.records_failed += 1
                    result.errors.append(f"player {player.id}: {str(e)}")
                    logger.warning(f"Pricing failed for player {player.id}: {str(e)}")
                    continue

                if valuation is None:
                    metrics["players_unpriced"] += 1
                elif valuation.method == ValuationMethod.DIRECT:
                    metrics["players_priced_direct"] += 1
                else:
                    metrics["players_priced_fallback"] += 1

                if valuation is not None and valuation.estimate == 0:
                    metrics["degenerate_values"] += 1
                    logger.warning(
                        f"Degenerate market value 0 for player {player.id} "
                        f"(bucket {valuation.bucket}, method {valuation.method.value})"
                    )

                updates.append(self._to_update(player, valuation, now))

            try:
                written = await self.store.update_market_values(updates)
            except StoreError as e:
                result.records_failed += len(updates)
                result.success = False
                result.error = e.message
                result.errors.append(e.message)
                logger.error(
                    f"Market value batch after player {after_id} failed: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                break

            result.records_processed += written
            metrics["batches"] += 1
            if on_batch is not None:
                await on_batch(result.records_processed, result.records_failed)

            if len(players) < batch_size:
                break

        metrics["players_processed"] = result.records_processed
        await self._record_run(run_id, started_at, info, metrics, matrix, result)

        logger.info(
            f"Market value run {run_id} finished: {result.records_processed} players written, "
            f"{result.records_failed} failed, {metrics['degenerate_values']} degenerate"
        )
        return result

    async def _record_run(
        self,
        run_id: str,
        started_at: datetime,
        info: Dict[str, Any],
        metrics: Dict[str, Any],
        matrix: MultiplierMatrix,
        result: MarketValueRunResult
    ):
        run = MultiplierRunInfo(
            run_id=run_id,
            status=MultiplierRunStatus.COMPLETED if result.success else MultiplierRunStatus.FAILED,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            window_days=info["window_days"],
            min_sample_size=info["min_sample_size"],
            corpus_fingerprint=info["fingerprint"],
            metrics=metrics,
            cells=matrix.to_cells(),
            error_message=result.error,
        )
        try:
            await self.store.save_multiplier_run(run)
        except StoreError as e:
            logger.error(f"Could not record multiplier run {run_id}: {e.message}")
            result.errors.append(e.message)
