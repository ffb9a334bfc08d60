"""
Record store interface used by the stages, the orchestrator and the API
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Any
from datetime import datetime
from models.base import StageName, ExecutionStatus, ExecutionType, SyncType
from schemas.marketplace import PlayerRecord, SaleRecord, ListingRecord, MarketValueUpdate
from schemas.sync import StageState, RunState, ExecutionInfo, MultiplierRunInfo, SyncStats


class RecordStore(ABC):
    """
    Durable storage for marketplace records and sync bookkeeping.

    Guarantees:
    - Upserts are keyed by natural id and are last-write-wins, so re-running a
      batch (or running batches out of order) converges to the same rows
    - Player upserts never touch market value fields
    - finish_execution only acts on RUNNING executions
    """

    # ------------------------------------------------------------------
    # Marketplace records
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_players(self, players: List[PlayerRecord]) -> int:
        """Insert or update basic player attributes, returns rows written"""

    @abstractmethod
    async def upsert_sales(self, sales: List[SaleRecord]) -> int:
        pass

    @abstractmethod
    async def upsert_listings(self, listings: List[ListingRecord]) -> int:
        pass

    @abstractmethod
    async def list_players(
        self,
        after_id: Optional[int],
        limit: int,
        only_degenerate: bool = False
    ) -> List[PlayerRecord]:
        """
        Players ordered by id, strictly after `after_id`.

        Args:
            only_degenerate: Only players whose estimate is exactly 0 with a
                non-null updated timestamp
        """

    @abstractmethod
    async def missing_player_ids(self, player_ids: List[int]) -> List[int]:
        """The subset of `player_ids` with no player row, ascending"""

    @abstractmethod
    async def list_sales(self, since: Optional[datetime] = None) -> List[SaleRecord]:
        """Sales purchased at or after `since` (all sales when None)"""

    @abstractmethod
    async def update_market_values(self, updates: List[MarketValueUpdate]) -> int:
        pass

    # ------------------------------------------------------------------
    # Stage state
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_stage_state(self, stage: StageName) -> Optional[StageState]:
        pass

    @abstractmethod
    async def save_stage_state(self, state: StageState) -> StageState:
        pass

    @abstractmethod
    async def list_stage_states(self) -> List[StageState]:
        pass

    # ------------------------------------------------------------------
    # Orchestrator run state
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_run_state(self, orchestrator_id: str) -> Optional[RunState]:
        pass

    @abstractmethod
    async def save_run_state(self, state: RunState) -> RunState:
        pass

    @abstractmethod
    async def list_incomplete_run_states(self) -> List[RunState]:
        pass

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_execution(
        self,
        sync_type: Optional[SyncType] = None,
        execution_type: ExecutionType = ExecutionType.MANUAL,
        triggered_by: Optional[str] = None,
        orchestrator_id: Optional[str] = None
    ) -> ExecutionInfo:
        pass

    @abstractmethod
    async def update_execution(self, execution_id: int, **fields: Any) -> bool:
        """Update a RUNNING execution in place, returns False if it is terminal"""

    @abstractmethod
    async def finish_execution(
        self,
        execution_id: int,
        status: ExecutionStatus,
        records_processed: int = 0,
        records_failed: int = 0,
        error_message: Optional[str] = None,
        stage_results: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Move a RUNNING execution to a terminal status, no-op otherwise"""

    @abstractmethod
    async def get_execution(self, execution_id: int) -> Optional[ExecutionInfo]:
        pass

    @abstractmethod
    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        limit: int = 10
    ) -> List[ExecutionInfo]:
        """Most recent first"""

    @abstractmethod
    async def cancel_running_executions(self, message: str) -> List[int]:
        """Mark every RUNNING execution cancelled, returns their ids"""

    @abstractmethod
    async def is_execution_cancelled(self, execution_id: int) -> bool:
        pass

    # ------------------------------------------------------------------
    # Multiplier runs
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_latest_multiplier_run(self) -> Optional[MultiplierRunInfo]:
        """Latest COMPLETED multiplier run"""

    @abstractmethod
    async def save_multiplier_run(self, run: MultiplierRunInfo) -> MultiplierRunInfo:
        pass

    # ------------------------------------------------------------------
    # Health, stats and locking
    # ------------------------------------------------------------------

    @abstractmethod
    async def ping(self) -> bool:
        pass

    @abstractmethod
    async def get_stats(self) -> SyncStats:
        pass

    @abstractmethod
    async def try_acquire_run_lock(self) -> bool:
        """Non-blocking; True when this process now owns the sync run lock"""

    @abstractmethod
    async def release_run_lock(self):
        pass
