"""
Pytest configuration and fixtures
"""

import pytest
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from core.exceptions import SyncError, UpsertError
from ingestion.base import MarketplaceSource, Page, RecordFailure
from ingestion.loaders.base import RecordStore
from ingestion.progress import ProgressBroadcaster
from models.base import (
    StageName,
    ExecutionStatus,
    ExecutionType,
    SyncType,
    ResourceType,
    MultiplierRunStatus,
)
from schemas.marketplace import PlayerRecord, SaleRecord, ListingRecord, MarketValueUpdate
from schemas.sync import StageState, RunState, ExecutionInfo, MultiplierRunInfo, SyncStats

BASE_TIME = datetime(2024, 6, 1, 12, 0, 0)


# ============================================================================
# Record factories
# ============================================================================

def make_player(player_id: int, position: str = "ST", age: int = 24, overall: int = 72, is_retired: bool = False) -> PlayerRecord:
    return PlayerRecord(
        id=player_id,
        first_name="Test",
        last_name=f"Player{player_id}",
        age=age,
        overall=overall,
        positions=[position],
        primary_position=position,
        is_retired=is_retired,
    )


def make_sale(
    sale_id: int,
    price: float = 100.0,
    position: str = "ST",
    age: int = 24,
    overall: int = 72,
    purchased_at: Optional[datetime] = None,
    player_id: Optional[int] = None
) -> SaleRecord:
    purchased_at = purchased_at or BASE_TIME - timedelta(minutes=sale_id)
    return SaleRecord(
        listing_resource_id=sale_id,
        player_id=player_id or sale_id,
        price=price,
        status="BOUGHT",
        listed_at=purchased_at - timedelta(hours=1),
        purchased_at=purchased_at,
        player_age=age,
        player_overall=overall,
        player_position=position,
    )


def make_listing(listing_id: int, price: float = 120.0, listed_at: Optional[datetime] = None) -> ListingRecord:
    return ListingRecord(
        listing_resource_id=listing_id,
        player_id=listing_id,
        price=price,
        listed_at=listed_at or BASE_TIME - timedelta(minutes=listing_id),
        player_age=24,
        player_overall=72,
        player_position="ST",
    )


# ============================================================================
# In-memory record store
# ============================================================================

class InMemoryRecordStore(RecordStore):
    """RecordStore with the same upsert and execution semantics as PostgresRecordStore"""

    def __init__(self):
        self.players: Dict[int, PlayerRecord] = {}
        self.market_values: Dict[int, MarketValueUpdate] = {}
        self.sales: Dict[int, SaleRecord] = {}
        self.listings: Dict[int, ListingRecord] = {}
        self.stage_states: Dict[StageName, StageState] = {}
        self.run_states: Dict[str, RunState] = {}
        self.executions: Dict[int, ExecutionInfo] = {}
        self.multiplier_runs: List[MultiplierRunInfo] = []
        self.locked = False
        self.calls: Dict[str, int] = {}
        self._failures: Dict[str, Tuple[int, Exception]] = {}
        self._next_execution_id = 1

    def inject_failure(self, method: str, on_call: int = 1, error: Optional[Exception] = None):
        """Raise `error` from `method` on its `on_call`-th call (and every call after)"""
        self._failures[method] = (on_call, error or UpsertError(f"{method} failed", context={"method": method}))

    def _track(self, method: str):
        self.calls[method] = self.calls.get(method, 0) + 1
        failure = self._failures.get(method)
        if failure and self.calls[method] >= failure[0]:
            raise failure[1]

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def upsert_players(self, players):
        self._track("upsert_players")
        for player in players:
            self.players[player.id] = player.model_copy()
        return len(players)

    async def upsert_sales(self, sales):
        self._track("upsert_sales")
        for sale in sales:
            self.sales[sale.listing_resource_id] = sale.model_copy()
        return len(sales)

    async def upsert_listings(self, listings):
        self._track("upsert_listings")
        for listing in listings:
            self.listings[listing.listing_resource_id] = listing.model_copy()
        return len(listings)

    async def list_players(self, after_id, limit, only_degenerate=False):
        self._track("list_players")
        ids = sorted(pid for pid in self.players if after_id is None or pid > after_id)
        if only_degenerate:
            ids = [
                pid for pid in ids
                if pid in self.market_values and self.market_values[pid].estimate == 0
            ]
        return [self.players[pid] for pid in ids[:limit]]

    async def missing_player_ids(self, player_ids):
        self._track("missing_player_ids")
        return sorted(set(player_ids) - set(self.players))

    async def list_sales(self, since=None):
        self._track("list_sales")
        return [
            sale for sale in self.sales.values()
            if since is None or (sale.purchased_at is not None and sale.purchased_at >= since)
        ]

    async def update_market_values(self, updates):
        self._track("update_market_values")
        written = 0
        for update in updates:
            if update.player_id in self.players:
                self.market_values[update.player_id] = update
                written += 1
        return written

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def get_stage_state(self, stage):
        self._track("get_stage_state")
        state = self.stage_states.get(stage)
        return state.model_copy(deep=True) if state else None

    async def save_stage_state(self, state):
        self._track("save_stage_state")
        self.stage_states[state.stage_name] = state.model_copy(deep=True)
        return state

    async def list_stage_states(self):
        return [s.model_copy(deep=True) for s in self.stage_states.values()]

    async def get_run_state(self, orchestrator_id):
        state = self.run_states.get(orchestrator_id)
        return state.model_copy(deep=True) if state else None

    async def save_run_state(self, state):
        self._track("save_run_state")
        state.updated_at = datetime.utcnow()
        self.run_states[state.orchestrator_id] = state.model_copy(deep=True)
        return state

    async def list_incomplete_run_states(self):
        return [s.model_copy(deep=True) for s in self.run_states.values() if not s.is_complete]

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def create_execution(
        self,
        sync_type: Optional[SyncType] = None,
        execution_type: ExecutionType = ExecutionType.MANUAL,
        triggered_by: Optional[str] = None,
        orchestrator_id: Optional[str] = None
    ):
        self._track("create_execution")
        execution = ExecutionInfo(
            id=self._next_execution_id,
            orchestrator_id=orchestrator_id,
            sync_type=sync_type,
            execution_type=execution_type,
            triggered_by=triggered_by,
            status=ExecutionStatus.RUNNING,
            started_at=datetime.utcnow(),
        )
        self._next_execution_id += 1
        self.executions[execution.id] = execution
        return execution.model_copy(deep=True)

    async def update_execution(self, execution_id, **fields):
        execution = self.executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING:
            return False
        self.executions[execution_id] = execution.model_copy(update=fields)
        return True

    async def finish_execution(
        self,
        execution_id,
        status,
        records_processed=0,
        records_failed=0,
        error_message=None,
        stage_results=None
    ):
        self._track("finish_execution")
        execution = self.executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING:
            return False
        completed_at = datetime.utcnow()
        self.executions[execution_id] = execution.model_copy(update={
            "status": status,
            "completed_at": completed_at,
            "duration_seconds": (completed_at - execution.started_at).total_seconds(),
            "records_processed": records_processed,
            "records_failed": records_failed,
            "error_message": error_message,
            "stage_results": stage_results or execution.stage_results,
        })
        return True

    async def get_execution(self, execution_id):
        execution = self.executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(self, status=None, limit=10):
        executions = sorted(self.executions.values(), key=lambda e: e.id, reverse=True)
        if status is not None:
            executions = [e for e in executions if e.status == status]
        return [e.model_copy(deep=True) for e in executions[:limit]]

    async def cancel_running_executions(self, message):
        cancelled = []
        for execution_id, execution in self.executions.items():
            if execution.status == ExecutionStatus.RUNNING:
                self.executions[execution_id] = execution.model_copy(update={
                    "status": ExecutionStatus.CANCELLED,
                    "completed_at": datetime.utcnow(),
                    "error_message": message,
                })
                cancelled.append(execution_id)
        return cancelled

    async def is_execution_cancelled(self, execution_id):
        execution = self.executions.get(execution_id)
        return execution is not None and execution.status == ExecutionStatus.CANCELLED

    # ------------------------------------------------------------------
    # Multiplier runs, health, locking
    # ------------------------------------------------------------------

    async def get_latest_multiplier_run(self):
        completed = [r for r in self.multiplier_runs if r.status == MultiplierRunStatus.COMPLETED]
        return completed[-1].model_copy(deep=True) if completed else None

    async def save_multiplier_run(self, run):
        self.multiplier_runs.append(run.model_copy(deep=True))
        return run

    async def ping(self):
        self._track("ping")
        return True

    async def get_stats(self):
        by_status: Dict[str, int] = {}
        for execution in self.executions.values():
            by_status[execution.status.value] = by_status.get(execution.status.value, 0) + 1
        return SyncStats(
            total_players=len(self.players),
            players_with_market_value=sum(1 for u in self.market_values.values() if u.estimate is not None),
            players_unpriced=sum(1 for u in self.market_values.values() if u.estimate is None),
            degenerate_market_values=sum(1 for u in self.market_values.values() if u.estimate == 0),
            total_sales=len(self.sales),
            total_listings=len(self.listings),
            executions_by_status=by_status,
        )

    async def try_acquire_run_lock(self):
        if self.locked:
            return False
        self.locked = True
        return True

    async def release_run_lock(self):
        self.locked = False


# ============================================================================
# Fake marketplace
# ============================================================================

class FakeMarketplaceSource(MarketplaceSource):
    """
    Serves pages from in-memory record lists with the client's cursor rules:
    the cursor is the id of the last record of a full page.
    """

    def __init__(
        self,
        players: Optional[List[PlayerRecord]] = None,
        sales: Optional[List[SaleRecord]] = None,
        listings: Optional[List[ListingRecord]] = None
    ):
        self.players = players or []
        self.sales = sales or []
        self.listings = listings or []
        self.requests: List[Dict[str, Any]] = []
        self.failures: Dict[Tuple[ResourceType, int], Exception] = {}
        self.malformed: Dict[ResourceType, List[RecordFailure]] = {}
        self.on_fetch: Optional[Callable[[ResourceType, int], Any]] = None
        # Reachable by id only, never through the paginated players listing
        self.unlisted_players: List[PlayerRecord] = []
        self.player_lookups: List[int] = []
        self.player_failures: Dict[int, Exception] = {}

    def fail_request(self, resource: ResourceType, request_number: int, error: Optional[Exception] = None):
        """Fail the `request_number`-th (1-based) request for `resource`"""
        self.failures[(resource, request_number)] = error or SyncError(f"{resource.value} request failed")

    def request_count(self, resource: ResourceType) -> int:
        return sum(1 for r in self.requests if r["resource"] == resource)

    def _pool(self, resource: ResourceType, filters: Dict[str, Any]) -> List[Any]:
        if resource == ResourceType.PLAYERS:
            pool = self.players
            if filters.get("is_retired") is not None:
                pool = [p for p in pool if p.is_retired == filters["is_retired"]]
            return sorted(pool, key=lambda p: p.id)
        if resource == ResourceType.SALES:
            return sorted(self.sales, key=lambda s: s.purchased_at, reverse=True)
        return sorted(self.listings, key=lambda l: l.listed_at, reverse=True)

    @staticmethod
    def _id(resource: ResourceType, record) -> str:
        return str(record.id if resource == ResourceType.PLAYERS else record.listing_resource_id)

    async def fetch_page(self, resource, cursor, page_size, **filters):
        self.requests.append({"resource": resource, "cursor": cursor, "page_size": page_size, **filters})
        number = self.request_count(resource)

        if self.on_fetch is not None:
            await self.on_fetch(resource, number)

        error = self.failures.get((resource, number))
        if error is not None:
            raise error

        pool = self._pool(resource, filters)
        start = 0
        if cursor is not None:
            ids = [self._id(resource, r) for r in pool]
            start = ids.index(cursor) + 1

        records = pool[start:start + page_size]
        next_cursor = self._id(resource, records[-1]) if len(records) >= page_size else None

        failures = []
        if start == 0:
            failures = list(self.malformed.get(resource, []))

        return Page(records=records, next_cursor=next_cursor, failures=failures, raw_count=len(records) + len(failures))

    async def fetch_player(self, player_id):
        """Single-player lookups are kept apart from `requests` (page fetches)"""
        self.player_lookups.append(player_id)
        error = self.player_failures.get(player_id)
        if error is not None:
            raise error
        for player in self.players + self.unlisted_players:
            if player.id == player_id:
                return player
        return None


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def broadcaster():
    return ProgressBroadcaster(history_limit=200)


@pytest.fixture
def players():
    active = [make_player(i, position="ST" if i % 2 else "CB", age=22 + i % 6, overall=65 + i % 10) for i in range(1, 9)]
    retired = [make_player(100 + i, is_retired=True) for i in range(1, 4)]
    return active + retired


@pytest.fixture
def sales():
    return [make_sale(i, price=100.0 + i) for i in range(1, 13)]


@pytest.fixture
def listings():
    return [make_listing(500 + i) for i in range(1, 6)]


@pytest.fixture
def source(players, sales, listings):
    return FakeMarketplaceSource(players=players, sales=sales, listings=listings)
