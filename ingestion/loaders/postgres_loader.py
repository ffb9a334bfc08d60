"""
PostgreSQL record store with upsert logic (idempotency)
"""

from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any, Type
from datetime import datetime
import uuid
from sqlalchemy import select, update, func, text, literal, DateTime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ingestion.loaders.base import RecordStore
from models.base import (
    StageName, ExecutionStatus, ExecutionType, SyncType, MultiplierRunStatus, PlayerSyncStage
)
from models.player import Player
from models.market import Sale, Listing
from models.sync_execution import SyncExecution
from models.checkpoint import SyncStageState, OrchestratorRunState
from models.market_multiplier import MultiplierRun
from schemas.marketplace import PlayerRecord, SaleRecord, ListingRecord, MarketValueUpdate
from schemas.sync import StageState, RunState, ExecutionInfo, MultiplierRunInfo, SyncStats
from core.exceptions import StoreError, UpsertError, RunStateError
import logging

logger = logging.getLogger(__name__)

# pg_try_advisory_lock key for "a sync run is in progress"
SYNC_RUN_LOCK_KEY = 720_431_001

PLAYER_BASIC_COLUMNS = [
    "first_name", "last_name", "age", "overall", "positions", "primary_position",
    "nationalities", "preferred_foot", "height", "is_retired",
    "pace", "shooting", "passing", "dribbling", "defense", "physical",
    "goalkeeping", "resistance",
    "owner_wallet_address", "owner_name", "club_id", "club_name",
    "basic_data_synced_at", "updated_at",
]

SALE_COLUMNS = [
    "player_id", "price", "status", "seller_address", "buyer_address",
    "listed_at", "purchased_at", "player_age", "player_overall", "player_position",
    "updated_at",
]

LISTING_COLUMNS = [
    "player_id", "price", "status", "seller_address", "listed_at",
    "player_age", "player_overall", "player_position", "updated_at",
]


class PostgresRecordStore(RecordStore):
    """
    Record store on PostgreSQL with idempotent upsert operations.

    Ensures:
    - No duplicate rows on repeated runs (INSERT ... ON CONFLICT DO UPDATE)
    - Player imports never overwrite market value fields
    - One short-lived session per operation; the run lock keeps its own
      session open for as long as the lock is held
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory
        self._lock_session: Optional[AsyncSession] = None

    @asynccontextmanager
    async def _session(
        self,
        operation: str,
        table_name: str,
        error_cls: Type[StoreError] = StoreError,
        **context
    ):
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"{operation} on {table_name} failed: {str(e)}")
                raise error_cls(
                    f"{operation} on {table_name} failed",
                    context={"operation": operation, "table_name": table_name, **context},
                    original_exception=e
                )

    async def _upsert(self, model, rows: List[Dict[str, Any]], key: str, columns: List[str]) -> int:
        if not rows:
            return 0

        table_name = model.__tablename__
        async with self._session("UPSERT", table_name, UpsertError, batch_size=len(rows)) as session:
            stmt = insert(model).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=[key],
                set_={column: stmt.excluded[column] for column in columns}
            )
            await session.execute(stmt)
            await session.commit()

        logger.debug(f"Upserted {len(rows)} rows into {table_name}")
        return len(rows)

    # ------------------------------------------------------------------
    # Marketplace records
    # ------------------------------------------------------------------

    async def upsert_players(self, players: List[PlayerRecord]) -> int:
        now = datetime.utcnow()
        # Last write wins within a batch too; ON CONFLICT rejects duplicate keys
        deduped = {p.id: p for p in players}
        rows = [
            {
                **p.model_dump(),
                "sync_stage": PlayerSyncStage.BASIC_IMPORTED,
                "basic_data_synced_at": now,
                "created_at": now,
                "updated_at": now,
            }
            for p in deduped.values()
        ]
        return await self._upsert(Player, rows, "id", PLAYER_BASIC_COLUMNS)

    async def upsert_sales(self, sales: List[SaleRecord]) -> int:
        now = datetime.utcnow()
        deduped = {s.listing_resource_id: s for s in sales}
        rows = [{**s.model_dump(), "created_at": now, "updated_at": now} for s in deduped.values()]
        return await self._upsert(Sale, rows, "listing_resource_id", SALE_COLUMNS)

    async def upsert_listings(self, listings: List[ListingRecord]) -> int:
        now = datetime.utcnow()
        deduped = {item.listing_resource_id: item for item in listings}
        rows = [{**item.model_dump(), "created_at": now, "updated_at": now} for item in deduped.values()]
        return await self._upsert(Listing, rows, "listing_resource_id", LISTING_COLUMNS)

    async def list_players(
        self,
        after_id: Optional[int],
        limit: int,
        only_degenerate: bool = False
    ) -> List[PlayerRecord]:
        query = select(Player).order_by(Player.id).limit(limit)
        if after_id is not None:
            query = query.where(Player.id > after_id)
        if only_degenerate:
            query = query.where(
                Player.market_value_estimate == 0,
                Player.market_value_updated_at.isnot(None)
            )

        async with self._session("SELECT", "players") as session:
            result = await session.execute(query)
            return [PlayerRecord.model_validate(row) for row in result.scalars().all()]

    async def missing_player_ids(self, player_ids: List[int]) -> List[int]:
        wanted = set(player_ids)
        if not wanted:
            return []

        async with self._session("SELECT", "players") as session:
            result = await session.execute(select(Player.id).where(Player.id.in_(wanted)))
            present = set(result.scalars().all())
        return sorted(wanted - present)

    async def list_sales(self, since: Optional[datetime] = None) -> List[SaleRecord]:
        query = select(Sale).order_by(Sale.listing_resource_id)
        if since is not None:
            query = query.where(Sale.purchased_at >= since)

        async with self._session("SELECT", "sales") as session:
            result = await session.execute(query)
            return [SaleRecord.model_validate(row) for row in result.scalars().all()]

    async def update_market_values(self, updates: List[MarketValueUpdate]) -> int:
        if not updates:
            return 0

        params = [
            {
                "id": u.player_id,
                "market_value_estimate": u.estimate,
                "market_value_low": u.low,
                "market_value_high": u.high,
                "market_value_confidence": u.confidence,
                "market_value_method": u.method,
                "market_value_sample_size": u.sample_size,
                "market_value_updated_at": u.updated_at,
                "sync_stage": u.sync_stage,
            }
            for u in updates
        ]

        async with self._session("UPDATE", "players", UpsertError, batch_size=len(updates)) as session:
            # ORM bulk UPDATE by primary key
            await session.execute(update(Player), params)
            await session.commit()

        return len(updates)

    # ------------------------------------------------------------------
    # Stage state
    # ------------------------------------------------------------------

    async def get_stage_state(self, stage: StageName) -> Optional[StageState]:
        async with self._session("SELECT", "sync_stages", RunStateError) as session:
            result = await session.execute(
                select(SyncStageState).where(SyncStageState.stage_name == stage)
            )
            row = result.scalar_one_or_none()
            return StageState.model_validate(row) if row else None

    async def save_stage_state(self, state: StageState) -> StageState:
        values = {**state.model_dump(), "updated_at": datetime.utcnow()}

        async with self._session("UPSERT", "sync_stages", RunStateError, stage=state.stage_name.value) as session:
            stmt = insert(SyncStageState).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["stage_name"],
                set_={k: stmt.excluded[k] for k in values if k != "stage_name"}
            )
            await session.execute(stmt)
            await session.commit()

        return state

    async def list_stage_states(self) -> List[StageState]:
        async with self._session("SELECT", "sync_stages", RunStateError) as session:
            result = await session.execute(select(SyncStageState).order_by(SyncStageState.id))
            return [StageState.model_validate(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Orchestrator run state
    # ------------------------------------------------------------------

    async def get_run_state(self, orchestrator_id: str) -> Optional[RunState]:
        async with self._session("SELECT", "orchestrator_run_states", RunStateError) as session:
            row = await session.get(OrchestratorRunState, orchestrator_id)
            return RunState.model_validate(row) if row else None

    async def save_run_state(self, state: RunState) -> RunState:
        state.updated_at = datetime.utcnow()
        values = state.model_dump(exclude={"completed_stages", "stage_progress", "errors"})
        values.update(state.model_dump(mode="json", include={"completed_stages", "stage_progress", "errors"}))

        async with self._session(
            "UPSERT", "orchestrator_run_states", RunStateError, orchestrator_id=state.orchestrator_id
        ) as session:
            stmt = insert(OrchestratorRunState).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["orchestrator_id"],
                set_={k: stmt.excluded[k] for k in values if k != "orchestrator_id"}
            )
            await session.execute(stmt)
            await session.commit()

        return state

    async def list_incomplete_run_states(self) -> List[RunState]:
        async with self._session("SELECT", "orchestrator_run_states", RunStateError) as session:
            result = await session.execute(
                select(OrchestratorRunState)
                .where(OrchestratorRunState.is_complete.is_(False))
                .order_by(OrchestratorRunState.started_at)
            )
            return [RunState.model_validate(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def create_execution(
        self,
        sync_type: Optional[SyncType] = None,
        execution_type: ExecutionType = ExecutionType.MANUAL,
        triggered_by: Optional[str] = None,
        orchestrator_id: Optional[str] = None
    ) -> ExecutionInfo:
        execution = SyncExecution(
            sync_type=sync_type,
            execution_type=execution_type,
            triggered_by=triggered_by,
            orchestrator_id=orchestrator_id,
            status=ExecutionStatus.RUNNING,
            started_at=datetime.utcnow(),
            records_processed=0,
            records_failed=0,
            stage_results={}
        )

        async with self._session("INSERT", "sync_executions") as session:
            session.add(execution)
            await session.commit()
            await session.refresh(execution)
            return ExecutionInfo.model_validate(execution)

    async def update_execution(self, execution_id: int, **fields: Any) -> bool:
        async with self._session("UPDATE", "sync_executions", execution_id=execution_id) as session:
            result = await session.execute(
                update(SyncExecution)
                .where(
                    SyncExecution.id == execution_id,
                    SyncExecution.status == ExecutionStatus.RUNNING
                )
                .values(**fields)
            )
            await session.commit()
            return result.rowcount > 0

    async def finish_execution(
        self,
        execution_id: int,
        status: ExecutionStatus,
        records_processed: int = 0,
        records_failed: int = 0,
        error_message: Optional[str] = None,
        stage_results: Optional[Dict[str, Any]] = None
    ) -> bool:
        async with self._session("UPDATE", "sync_executions", execution_id=execution_id) as session:
            result = await session.execute(
                select(SyncExecution).where(SyncExecution.id == execution_id).with_for_update()
            )
            execution = result.scalar_one_or_none()

            if execution is None or execution.status != ExecutionStatus.RUNNING:
                await session.rollback()
                return False

            execution.status = status
            execution.completed_at = datetime.utcnow()
            execution.duration_seconds = (execution.completed_at - execution.started_at).total_seconds()
            execution.records_processed = records_processed
            execution.records_failed = records_failed
            execution.error_message = error_message
            if stage_results is not None:
                execution.stage_results = stage_results

            await session.commit()
            return True

    async def get_execution(self, execution_id: int) -> Optional[ExecutionInfo]:
        async with self._session("SELECT", "sync_executions") as session:
            execution = await session.get(SyncExecution, execution_id)
            return ExecutionInfo.model_validate(execution) if execution else None

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        limit: int = 10
    ) -> List[ExecutionInfo]:
        query = select(SyncExecution).order_by(SyncExecution.started_at.desc(), SyncExecution.id.desc()).limit(limit)
        if status is not None:
            query = query.where(SyncExecution.status == status)

        async with self._session("SELECT", "sync_executions") as session:
            result = await session.execute(query)
            return [ExecutionInfo.model_validate(row) for row in result.scalars().all()]

    async def cancel_running_executions(self, message: str) -> List[int]:
        now = datetime.utcnow()

        async with self._session("UPDATE", "sync_executions") as session:
            result = await session.execute(
                update(SyncExecution)
                .where(SyncExecution.status == ExecutionStatus.RUNNING)
                .values(
                    status=ExecutionStatus.CANCELLED,
                    completed_at=now,
                    duration_seconds=func.extract("epoch", literal(now, DateTime) - SyncExecution.started_at),
                    error_message=message
                )
                .returning(SyncExecution.id)
            )
            ids = [row[0] for row in result.all()]
            await session.commit()
            return ids

    async def is_execution_cancelled(self, execution_id: int) -> bool:
        async with self._session("SELECT", "sync_executions") as session:
            result = await session.execute(
                select(SyncExecution.status).where(SyncExecution.id == execution_id)
            )
            return result.scalar_one_or_none() == ExecutionStatus.CANCELLED

    # ------------------------------------------------------------------
    # Multiplier runs
    # ------------------------------------------------------------------

    async def get_latest_multiplier_run(self) -> Optional[MultiplierRunInfo]:
        async with self._session("SELECT", "market_multiplier_runs") as session:
            result = await session.execute(
                select(MultiplierRun)
                .where(MultiplierRun.status == MultiplierRunStatus.COMPLETED)
                .order_by(MultiplierRun.completed_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return MultiplierRunInfo.model_validate(row) if row else None

    async def save_multiplier_run(self, run: MultiplierRunInfo) -> MultiplierRunInfo:
        values = run.model_dump(exclude={"metrics", "cells"})
        values.update(run.model_dump(mode="json", include={"metrics", "cells"}))
        values["run_id"] = uuid.UUID(run.run_id)

        async with self._session("UPSERT", "market_multiplier_runs", run_id=run.run_id) as session:
            stmt = insert(MultiplierRun).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["run_id"],
                set_={k: stmt.excluded[k] for k in values if k != "run_id"}
            )
            await session.execute(stmt)
            await session.commit()

        return run

    # ------------------------------------------------------------------
    # Health, stats and locking
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        async with self._session("SELECT", "health") as session:
            await session.execute(text("SELECT 1"))
            return True

    async def get_stats(self) -> SyncStats:
        async with self._session("SELECT", "stats") as session:
            async def count(model, *criteria) -> int:
                query = select(func.count()).select_from(model)
                if criteria:
                    query = query.where(*criteria)
                return (await session.execute(query)).scalar() or 0

            by_status = await session.execute(
                select(SyncExecution.status, func.count()).group_by(SyncExecution.status)
            )
            last_completed = await session.execute(
                select(func.max(SyncExecution.completed_at))
                .where(SyncExecution.status == ExecutionStatus.COMPLETED)
            )

            return SyncStats(
                total_players=await count(Player),
                players_with_market_value=await count(Player, Player.market_value_estimate > 0),
                players_unpriced=await count(Player, Player.sync_stage == PlayerSyncStage.MARKET_UNPRICED),
                degenerate_market_values=await count(
                    Player,
                    Player.market_value_estimate == 0,
                    Player.market_value_updated_at.isnot(None)
                ),
                total_sales=await count(Sale),
                total_listings=await count(Listing),
                executions_by_status={status.value: n for status, n in by_status.all()},
                last_completed_at=last_completed.scalar()
            )

    async def try_acquire_run_lock(self) -> bool:
        if self._lock_session is not None:
            return False

        session = self._session_factory()
        try:
            result = await session.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": SYNC_RUN_LOCK_KEY}
            )
            acquired = bool(result.scalar())
        except SQLAlchemyError as e:
            await session.close()
            raise StoreError(
                "Failed to acquire sync run lock",
                context={"operation": "pg_try_advisory_lock", "lock_key": SYNC_RUN_LOCK_KEY},
                original_exception=e
            )

        if not acquired:
            await session.close()
            return False

        # The advisory lock lives as long as this session's connection
        self._lock_session = session
        logger.info("Sync run lock acquired")
        return True

    async def release_run_lock(self):
        session, self._lock_session = self._lock_session, None
        if session is None:
            return

        try:
            await session.execute(
                text("SELECT pg_advisory_unlock(:key)"), {"key": SYNC_RUN_LOCK_KEY}
            )
        finally:
            await session.close()
        logger.info("Sync run lock released")
