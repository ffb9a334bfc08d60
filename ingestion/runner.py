# ============================================================================
# File: ingestion/runner.py
# Description: Sync orchestrator for the six-stage marketplace pipeline
# ============================================================================
"""
Sync Orchestrator - sequences stages, persists run state, stops and resumes.

This module provides:
- Named run modes (initial, daily, full) over a fixed stage order
- Chunked execution of long stages under an optional wall-clock budget
- Typed run state written after every stage transition and every chunk
- Idempotent stop of every running execution
- An advisory run lock so only one sync runs at a time
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable
import time
import uuid
import logging

from core.config import settings
from core.exceptions import (
    SyncError,
    RunStateError,
    SyncAlreadyRunningError,
    StageConfigurationError,
    StoreError,
)
from ingestion.base import MarketplaceSource
from ingestion.chunking import ChunkController
from ingestion.loaders.base import RecordStore
from ingestion.missing_players import PlayerImportOutcome, import_players_by_id
from ingestion.progress import ProgressBroadcaster, ProgressReporter
from ingestion.stages import StageContext, SyncStage, build_stages
from models.base import StageName, SyncType, ExecutionStatus, ExecutionType
from schemas.sync import StageOptions, StageResult, RunState, ExecutionInfo

logger = logging.getLogger(__name__)

CANCEL_MESSAGE = "Sync manually cancelled by user"

STAGE_ORDER = [
    StageName.PLAYERS_IMPORT,
    StageName.HISTORICAL_SALES,
    StageName.HISTORICAL_LISTINGS,
    StageName.MARKET_VALUES,
    StageName.LIVE_SALES,
    StageName.LIVE_LISTINGS,
]

MODE_STAGES = {
    SyncType.INITIAL: STAGE_ORDER[:4],
    SyncType.DAILY: STAGE_ORDER,
    SyncType.FULL: STAGE_ORDER,
}

FORCED_STAGES = {
    SyncType.INITIAL: set(),
    SyncType.DAILY: set(),
    SyncType.FULL: {StageName.HISTORICAL_SALES, StageName.HISTORICAL_LISTINGS},
}

# A failure here is recorded but does not fail the run
OPTIONAL_STAGES = {StageName.HISTORICAL_LISTINGS, StageName.LIVE_LISTINGS}


@dataclass
class OrchestratorResult:
    orchestrator_id: str
    execution_id: int
    sync_type: SyncType
    status: ExecutionStatus
    is_complete: bool
    stages: List[StageName]
    stage_results: Dict[str, StageResult] = field(default_factory=dict)
    duration_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def successful_stages(self) -> int:
        return sum(
            1 for r in self.stage_results.values()
            if r.success and r.is_complete and not r.cancelled
        )

    @property
    def skipped_stages(self) -> List[str]:
        return [name for name, r in self.stage_results.items() if r.skipped]


@dataclass
class StopResult:
    execution_ids: List[int] = field(default_factory=list)

    @property
    def stopped_executions(self) -> int:
        return len(self.execution_ids)


@dataclass
class StageRunResult:
    """A standalone stage or chunk invocation and the execution that tracked it"""
    execution_id: int
    status: ExecutionStatus
    result: StageResult


class SyncOrchestrator:
    """
    Sync Orchestrator

    Responsibilities:
    - Run stages in order: players, historical sales/listings, market values,
      live sales/listings
    - Mark a run failed on the first required stage failure and skip the rest,
      without undoing earlier stages
    - Observe stop requests between stages (stages observe them between pages)
    - Persist run state so a paused run resumes exactly where it stopped
    """

    def __init__(
        self,
        store: RecordStore,
        source: MarketplaceSource,
        broadcaster: Optional[ProgressBroadcaster] = None,
        engine=None,
        chunk_max_pages: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        use_run_lock: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.source = source
        self.broadcaster = broadcaster
        self.context = StageContext(source=source, store=store, broadcaster=broadcaster, engine=engine)
        self.stages: Dict[StageName, SyncStage] = build_stages(self.context)
        self.chunk_max_pages = chunk_max_pages or settings.CHUNK_MAX_PAGES
        self.chunks = ChunkController(self.stages, self.chunk_max_pages)
        self.time_budget_seconds = (
            time_budget_seconds if time_budget_seconds is not None else settings.SYNC_TIME_BUDGET_SECONDS
        )
        self.use_run_lock = settings.SYNC_SINGLE_RUN_LOCK if use_run_lock is None else use_run_lock
        self._clock = clock

    # ==================================================================
    # Locking
    # ==================================================================

    @asynccontextmanager
    async def _run_lock(self):
        if not self.use_run_lock:
            yield
            return

        if not await self.store.try_acquire_run_lock():
            raise SyncAlreadyRunningError(
                "Another sync run is already in progress",
                context={"lock": "sync_run"}
            )
        try:
            yield
        finally:
            await self.store.release_run_lock()

    # ==================================================================
    # Runs
    # ==================================================================

    async def run(
        self,
        sync_type: SyncType,
        execution_type: ExecutionType = ExecutionType.MANUAL,
        triggered_by: Optional[str] = None,
        time_budget_seconds: Optional[float] = None
    ) -> OrchestratorResult:
        """
        Start a new run of `sync_type`.

        Raises:
            SyncAlreadyRunningError: The run lock is held elsewhere
            StoreError: Bookkeeping writes failed (the execution is marked failed first)
        """
        async with self._run_lock():
            orchestrator_id = f"{sync_type.value}-{uuid.uuid4().hex[:12]}"
            execution = await self.store.create_execution(
                sync_type=sync_type,
                execution_type=execution_type,
                triggered_by=triggered_by,
                orchestrator_id=orchestrator_id,
            )
            state = RunState(
                orchestrator_id=orchestrator_id,
                execution_id=execution.id,
                sync_type=sync_type,
            )
            try:
                await self.store.save_run_state(state)
            except StoreError as e:
                logger.error(f"Could not save run state for {orchestrator_id}: {e.message}")
                await self.store.finish_execution(execution.id, ExecutionStatus.FAILED, error_message=e.message)
                raise

            logger.info(
                f"Starting {sync_type.value} sync {orchestrator_id} "
                f"(execution {execution.id}, {len(MODE_STAGES[sync_type])} stages)"
            )
            return await self._drive(state, time_budget_seconds)

    async def resume(self, orchestrator_id: str, time_budget_seconds: Optional[float] = None) -> OrchestratorResult:
        """
        Continue a paused run from its persisted state.

        Raises:
            RunStateError: Unknown orchestrator id, or its execution is no longer running
        """
        async with self._run_lock():
            state = await self.store.get_run_state(orchestrator_id)
            if state is None:
                raise RunStateError(
                    f"Unknown orchestrator run: {orchestrator_id}",
                    context={"orchestrator_id": orchestrator_id}
                )

            execution = await self.store.get_execution(state.execution_id) if state.execution_id else None

            if state.is_complete:
                logger.info(f"Run {orchestrator_id} already complete, nothing to resume")
                return self._result_from_state(state, execution)

            if execution is None or execution.status != ExecutionStatus.RUNNING:
                raise RunStateError(
                    f"Run {orchestrator_id} cannot be resumed",
                    context={
                        "orchestrator_id": orchestrator_id,
                        "execution_status": execution.status.value if execution else None
                    }
                )

            logger.info(
                f"Resuming {state.sync_type.value} sync {orchestrator_id} at "
                f"{state.current_stage.value if state.current_stage else 'next stage'}"
            )
            return await self._drive(state, time_budget_seconds)

    async def _drive(self, state: RunState, time_budget_seconds: Optional[float]) -> OrchestratorResult:
        started = self._clock()
        budget = time_budget_seconds if time_budget_seconds is not None else self.time_budget_seconds
        deadline = started + budget if budget else None

        stage_list = MODE_STAGES[state.sync_type]
        forced = FORCED_STAGES[state.sync_type]
        first_error: Optional[str] = None
        status: Optional[ExecutionStatus] = None
        did_work = False

        reporter = ProgressReporter(self.broadcaster, state.execution_id, "sync")
        reporter.started(f"{state.sync_type.value} sync: {len(stage_list)} stages")

        try:
            for index, stage_name in enumerate(stage_list):
                if stage_name in state.completed_stages:
                    continue

                # --------------------------------------------------
                # Stop requests and time budget, between stages
                # --------------------------------------------------
                if await self.store.is_execution_cancelled(state.execution_id):
                    logger.info(f"Run {state.orchestrator_id} cancelled before {stage_name.value}")
                    status = ExecutionStatus.CANCELLED
                    break

                if did_work and deadline is not None and self._clock() >= deadline:
                    logger.info(f"Run {state.orchestrator_id} paused before {stage_name.value}: time budget reached")
                    break

                state.current_stage = stage_name
                await self.store.save_run_state(state)

                # --------------------------------------------------
                # Run the stage (chunked stages loop through the controller)
                # --------------------------------------------------
                stage = self.stages[stage_name]
                options = StageOptions(execution_id=state.execution_id, force=stage_name in forced)

                if stage.chunkable:
                    result = await self._run_chunked(stage, state, options, deadline)
                else:
                    result = await stage.run(options)
                    state.stage_progress[stage_name.value] = result
                did_work = True

                await self.store.update_execution(
                    state.execution_id,
                    stage_results=self._serialize_results(state.stage_progress),
                    records_processed=sum(r.records_processed for r in state.stage_progress.values()),
                    records_failed=sum(r.records_failed for r in state.stage_progress.values()),
                )

                if result.cancelled:
                    status = ExecutionStatus.CANCELLED
                    break

                if not result.success:
                    message = f"{stage_name.value}: {result.first_error or 'failed'}"
                    state.errors.append(message)

                    if stage_name not in OPTIONAL_STAGES:
                        logger.error(f"Required stage {stage_name.value} failed, skipping remaining stages")
                        first_error = message
                        status = ExecutionStatus.FAILED
                        break

                    logger.warning(f"Optional stage {stage_name.value} failed, continuing")

                elif not result.is_complete:
                    # Chunked stage ran out of time budget
                    logger.info(f"Run {state.orchestrator_id} paused inside {stage_name.value}")
                    await self.store.save_run_state(state)
                    break

                state.completed_stages.append(stage_name)
                state.continue_from = None
                state.chunks_processed = 0
                await self.store.save_run_state(state)

                reporter.progress(
                    sum(r.records_processed for r in state.stage_progress.values()),
                    sum(r.records_failed for r in state.stage_progress.values()),
                    current=index + 1,
                    total=len(stage_list),
                    message=f"{stage_name.value} done"
                )
            else:
                status = ExecutionStatus.COMPLETED

            return await self._finish(state, status, first_error, started, reporter)

        except SyncError as e:
            logger.error(
                f"Run {state.orchestrator_id} aborted: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            await self.store.finish_execution(
                state.execution_id,
                ExecutionStatus.FAILED,
                error_message=e.message,
                stage_results=self._serialize_results(state.stage_progress),
            )
            reporter.failed(e.message)
            raise

    async def _run_chunked(
        self,
        stage: SyncStage,
        state: RunState,
        options: StageOptions,
        deadline: Optional[float]
    ) -> StageResult:
        key = stage.name.value
        prior = state.stage_progress.get(key)
        continue_from = state.continue_from

        if prior is not None and continue_from:
            total = prior.model_copy(deep=True)
        else:
            total = StageResult(stage=stage.name)
            continue_from = None

        while True:
            chunk = await self.chunks.run_chunk(
                stage.name,
                self.chunk_max_pages,
                continue_from,
                execution_id=options.execution_id,
                force=options.force,
            )
            total.absorb(chunk)

            state.chunks_processed += 1
            state.continue_from = chunk.continue_from
            state.stage_progress[key] = total
            await self.store.save_run_state(state)

            if chunk.skipped or chunk.cancelled or not chunk.success or chunk.is_complete:
                break
            if deadline is not None and self._clock() >= deadline:
                logger.info(f"Time budget reached inside {key} after {state.chunks_processed} chunks")
                break
            continue_from = chunk.continue_from

        return total

    async def _finish(
        self,
        state: RunState,
        status: Optional[ExecutionStatus],
        first_error: Optional[str],
        started: float,
        reporter: ProgressReporter
    ) -> OrchestratorResult:
        processed = sum(r.records_processed for r in state.stage_progress.values())
        failed = sum(r.records_failed for r in state.stage_progress.values())

        if status is None:
            # Paused: execution stays RUNNING, run state stays incomplete
            state.is_complete = False
            await self.store.save_run_state(state)
            reporter.progress(processed, failed, message="paused, resume to continue")
            logger.info(f"Run {state.orchestrator_id} paused; resume with this orchestrator id")
            return self._build_result(state, ExecutionStatus.RUNNING, started, first_error)

        finished = await self.store.finish_execution(
            state.execution_id,
            status,
            records_processed=processed,
            records_failed=failed,
            error_message=first_error,
            stage_results=self._serialize_results(state.stage_progress),
        )
        if not finished:
            # Someone else (stop) already moved the execution to a terminal state
            execution = await self.store.get_execution(state.execution_id)
            if execution is not None:
                status = execution.status

        state.is_complete = True
        state.current_stage = None
        state.completed_at = datetime.utcnow()
        await self.store.save_run_state(state)

        if status == ExecutionStatus.COMPLETED:
            reporter.completed(processed, failed)
        elif status == ExecutionStatus.CANCELLED:
            reporter.cancelled(processed, failed)
        else:
            reporter.failed(first_error or "sync failed", processed, failed)

        logger.info(
            f"Run {state.orchestrator_id} {status.value}: "
            f"{len(state.completed_stages)}/{len(MODE_STAGES[state.sync_type])} stages, "
            f"processed={processed}, failed={failed}"
        )
        return self._build_result(state, status, started, first_error)

    def _build_result(
        self,
        state: RunState,
        status: ExecutionStatus,
        started: float,
        first_error: Optional[str]
    ) -> OrchestratorResult:
        return OrchestratorResult(
            orchestrator_id=state.orchestrator_id,
            execution_id=state.execution_id,
            sync_type=state.sync_type,
            status=status,
            is_complete=state.is_complete,
            stages=MODE_STAGES[state.sync_type],
            stage_results=dict(state.stage_progress),
            duration_seconds=round(self._clock() - started, 3),
            errors=list(state.errors),
            error=first_error,
        )

    def _result_from_state(self, state: RunState, execution: Optional[ExecutionInfo]) -> OrchestratorResult:
        status = execution.status if execution else ExecutionStatus.COMPLETED
        return OrchestratorResult(
            orchestrator_id=state.orchestrator_id,
            execution_id=state.execution_id,
            sync_type=state.sync_type,
            status=status,
            is_complete=state.is_complete,
            stages=MODE_STAGES[state.sync_type],
            stage_results=dict(state.stage_progress),
            errors=list(state.errors),
            error=execution.error_message if execution else None,
        )

    @staticmethod
    def _serialize_results(results: Dict[str, StageResult]) -> Dict[str, Any]:
        return {name: r.model_dump(mode="json") for name, r in results.items()}

    # ==================================================================
    # Single stages and chunks
    # ==================================================================

    def get_stage(self, stage_name: StageName) -> SyncStage:
        stage = self.stages.get(stage_name)
        if stage is None:
            raise StageConfigurationError(f"Unknown stage: {stage_name}", context={"stage": str(stage_name)})
        return stage

    async def _tracked(self, stage_name: StageName, invoke) -> StageRunResult:
        async with self._run_lock():
            execution = await self.store.create_execution(
                execution_type=ExecutionType.API,
                triggered_by=stage_name.value,
            )
            reporter = ProgressReporter(self.broadcaster, execution.id, "sync")
            reporter.started(f"{stage_name.value} started")
            result = await invoke(execution.id)

            if result.cancelled:
                status = ExecutionStatus.CANCELLED
                reporter.cancelled(result.records_processed, result.records_failed)
            elif result.success:
                status = ExecutionStatus.COMPLETED
                reporter.completed(result.records_processed, result.records_failed)
            else:
                status = ExecutionStatus.FAILED
                reporter.failed(result.first_error or "failed", result.records_processed, result.records_failed)

            await self.store.finish_execution(
                execution.id,
                status,
                records_processed=result.records_processed,
                records_failed=result.records_failed,
                error_message=result.first_error if status == ExecutionStatus.FAILED else None,
                stage_results=self._serialize_results({stage_name.value: result}),
            )
            return StageRunResult(execution_id=execution.id, status=status, result=result)

    async def run_stage(self, stage_name: StageName, options: Optional[StageOptions] = None) -> StageRunResult:
        """Run one stage to completion under its own execution"""
        stage = self.get_stage(stage_name)
        options = options or StageOptions()

        async def invoke(execution_id: int) -> StageResult:
            return await stage.run(options.model_copy(update={"execution_id": execution_id}))

        return await self._tracked(stage_name, invoke)

    async def run_chunk(
        self,
        stage_name: StageName,
        max_pages: Optional[int] = None,
        continue_from: Optional[str] = None,
        force: bool = False
    ) -> StageRunResult:
        """One externally driven chunk of a chunkable stage under its own execution"""
        self.chunks._resolve(stage_name)
        if max_pages is not None and max_pages < 1:
            raise StageConfigurationError("maxPages must be at least 1", context={"max_pages": max_pages})

        async def invoke(execution_id: int) -> StageResult:
            return await self.chunks.run_chunk(
                stage_name, max_pages, continue_from, execution_id=execution_id, force=force
            )

        return await self._tracked(stage_name, invoke)

    async def import_player(self, player_id: int) -> PlayerImportOutcome:
        """Import one player by id outside any run (no execution, no lock)"""
        logger.info(f"Single player import: {player_id}")
        return await import_players_by_id(self.source, self.store, [player_id])

    # ==================================================================
    # Stop and status
    # ==================================================================

    async def stop(self) -> StopResult:
        """
        Cancel every running execution. Idempotent: with nothing running it
        returns zero stopped executions.
        """
        execution_ids = await self.store.cancel_running_executions(CANCEL_MESSAGE)

        if execution_ids:
            cancelled = set(execution_ids)
            for state in await self.store.list_incomplete_run_states():
                if state.execution_id in cancelled:
                    state.is_complete = True
                    state.completed_at = datetime.utcnow()
                    await self.store.save_run_state(state)

            for execution_id in execution_ids:
                ProgressReporter(self.broadcaster, execution_id, "sync").cancelled()

        logger.info(f"Stop requested: {len(execution_ids)} executions cancelled")
        return StopResult(execution_ids=execution_ids)

    async def status(self, kind: str = "current", limit: int = 10) -> Dict[str, Any]:
        """
        Status views:
            current: running executions and stage states
            latest: the most recent execution
            history: the last `limit` executions
            stats: record counters, execution counts and stage states
        """
        if kind == "current":
            running = await self.store.list_executions(status=ExecutionStatus.RUNNING, limit=limit)
            return {
                "type": kind,
                "is_running": bool(running),
                "executions": running,
                "stages": await self.store.list_stage_states(),
            }

        if kind == "latest":
            latest = await self.store.list_executions(limit=1)
            return {"type": kind, "execution": latest[0] if latest else None}

        if kind == "history":
            return {"type": kind, "executions": await self.store.list_executions(limit=limit)}

        if kind == "stats":
            return {
                "type": kind,
                "stats": await self.store.get_stats(),
                "stages": await self.store.list_stage_states(),
            }

        raise StageConfigurationError(
            f"Unknown status type: {kind}",
            context={"allowed": ["current", "latest", "history", "stats"]}
        )

    async def get_orchestrator_status(self, orchestrator_id: str) -> Dict[str, Any]:
        state = await self.store.get_run_state(orchestrator_id)
        if state is None:
            raise RunStateError(
                f"Unknown orchestrator run: {orchestrator_id}",
                context={"orchestrator_id": orchestrator_id}
            )

        execution = await self.store.get_execution(state.execution_id) if state.execution_id else None
        return {
            "orchestrator_id": orchestrator_id,
            "is_running": execution is not None and execution.status == ExecutionStatus.RUNNING,
            "execution": execution,
            "state": state,
        }

    async def resume_incomplete(self) -> List[OrchestratorResult]:
        """Resume every paused run whose execution is still running"""
        results = []
        for state in await self.store.list_incomplete_run_states():
            execution = await self.store.get_execution(state.execution_id) if state.execution_id else None
            if execution is None or execution.status != ExecutionStatus.RUNNING:
                continue
            results.append(await self.resume(state.orchestrator_id))
        return results
