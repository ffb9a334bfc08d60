"""
Tests for failure scenarios and recovery
"""

import pytest
from datetime import datetime, timedelta
from marketplace_server import MarketplaceServer, make_client, player_payload
from core.exceptions import UpsertError
from ingestion.runner import CANCEL_MESSAGE, SyncOrchestrator
from models.base import ExecutionStatus, StageName, StageStatus, SyncType
from valuation.engine import MarketValueEngine, ValuationConfig


@pytest.fixture
def server():
    server = MarketplaceServer()
    now = datetime.utcnow()
    server.players = [player_payload(i) for i in range(1, 4)]
    for i in range(1, 13):
        server.add_sale(i, 100.0 + i, now - timedelta(hours=i))
    return server


def make_orchestrator(server, store, sleeps=None, max_retries=3):
    engine = MarketValueEngine(store, ValuationConfig(min_corpus=0))
    orchestrator = SyncOrchestrator(store, make_client(server, sleeps, max_retries), engine=engine)
    orchestrator.stages[StageName.HISTORICAL_SALES].page_size = 5
    return orchestrator


@pytest.mark.asyncio
async def test_transient_server_errors_are_retried(server, store):
    """
    Test: marketplace returns 503 twice, the client backs off and the run completes
    """
    sleeps = []
    server.errors["sales"] = [503, 503]
    orchestrator = make_orchestrator(server, store, sleeps)

    result = await orchestrator.run(SyncType.INITIAL)

    assert result.status == ExecutionStatus.COMPLETED
    assert sleeps == [1.0, 2.0]
    assert len(store.sales) == 12


@pytest.mark.asyncio
async def test_rate_limit_retry_after_is_honoured(server, store):
    sleeps = []
    server.errors["players"] = [429]
    orchestrator = make_orchestrator(server, store, sleeps)

    result = await orchestrator.run(SyncType.INITIAL)

    assert result.status == ExecutionStatus.COMPLETED
    assert sleeps == [1.0]
    assert len(store.players) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_fail_run_and_keep_earlier_stages(server, store):
    """
    Test: sales endpoint stays down, the run fails at the sales backfill but
    imported players stay imported
    """
    server.errors["sales"] = [500] * 10
    orchestrator = make_orchestrator(server, store, max_retries=2)

    result = await orchestrator.run(SyncType.INITIAL)

    assert result.status == ExecutionStatus.FAILED
    assert result.error.startswith("sales_historical: Server error 500")
    assert len(store.players) == 3
    assert store.sales == {}
    assert len(server.requests_for("sales")) == 3
    assert store.stage_states[StageName.HISTORICAL_SALES].status == StageStatus.FAILED
    assert StageName.MARKET_VALUES not in store.stage_states


@pytest.mark.asyncio
async def test_backfill_resumes_from_checkpoint_on_next_run(server, store):
    """
    Test: the backfill fails on its second page; the next run continues from
    the checkpointed cursor instead of starting over
    """
    orchestrator = make_orchestrator(server, store, max_retries=0)

    async def fail_second_sales_page():
        first = await orchestrator.run_chunk(StageName.HISTORICAL_SALES, max_pages=1)
        server.errors["sales"] = [500]
        second = await orchestrator.run_chunk(StageName.HISTORICAL_SALES, max_pages=1, continue_from=first.result.continue_from)
        return first, second

    first, second = await fail_second_sales_page()
    assert first.status == ExecutionStatus.COMPLETED
    assert second.status == ExecutionStatus.FAILED
    assert store.stage_states[StageName.HISTORICAL_SALES].cursor == "5"

    result = await orchestrator.run(SyncType.INITIAL)

    assert result.status == ExecutionStatus.COMPLETED
    assert result.stage_results["sales_historical"].records_processed == 7
    resumed = server.requests_for("sales")[2]
    assert resumed.url.params["beforeListingId"] == "5"
    assert len(store.sales) == 12


@pytest.mark.asyncio
async def test_database_failure_mid_stage(server, store):
    store.inject_failure("upsert_sales", error=UpsertError("sales insert failed"))
    orchestrator = make_orchestrator(server, store)

    result = await orchestrator.run(SyncType.INITIAL)

    assert result.status == ExecutionStatus.FAILED
    assert result.stage_results["sales_historical"].records_failed == 5
    assert store.executions[result.execution_id].error_message == "sales_historical: sales insert failed"


@pytest.mark.asyncio
async def test_stop_between_pages_then_fresh_run(server, store):
    """
    Test: a stop request lands mid-backfill; the run is cancelled and a new
    run continues the backfill where it stopped
    """
    original_handler = server.handler
    stopped = []

    def handler_with_stop(request):
        response = original_handler(request)
        if server._resource(request) == "sales" and not stopped:
            stopped.append(request)
            for execution in store.executions.values():
                if execution.status == ExecutionStatus.RUNNING:
                    store.executions[execution.id] = execution.model_copy(update={
                        "status": ExecutionStatus.CANCELLED,
                        "error_message": CANCEL_MESSAGE,
                    })
        return response

    server.handler = handler_with_stop
    orchestrator = make_orchestrator(server, store)

    cancelled = await orchestrator.run(SyncType.INITIAL)

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.stage_results["sales_historical"].cancelled
    assert len(store.sales) == 5

    result = await orchestrator.run(SyncType.INITIAL)

    assert result.status == ExecutionStatus.COMPLETED
    assert result.stage_results["sales_historical"].records_processed == 7
    assert len(store.sales) == 12
