"""
Integration tests for the complete sync pipeline: marketplace client, stages,
orchestrator and market value engine against an in-process marketplace
"""

import pytest
from datetime import datetime, timedelta
from marketplace_server import MarketplaceServer, make_client, player_payload
from ingestion.runner import SyncOrchestrator
from models.base import Confidence, ExecutionStatus, PlayerSyncStage, StageName, SyncType, ValuationMethod
from valuation.engine import MarketValueEngine, ValuationConfig


@pytest.fixture
def server():
    server = MarketplaceServer()
    now = datetime.utcnow().replace(microsecond=0)

    server.players = [player_payload(i, position="ST", overall=72) for i in range(1, 6)]
    server.players += [player_payload(i, position="CB", age=26, overall=64) for i in range(6, 9)]
    retired = player_payload(900, position="GK")
    retired["retired"] = True
    server.players.append(retired)

    for i in range(1, 21):
        server.add_sale(i, 50.0, now - timedelta(hours=i), position="CB", age=26, overall=64)
    for i in range(21, 31):
        server.add_sale(i, 100.0, now - timedelta(hours=i), position="ST", overall=72)
    for i in range(501, 504):
        server.add_listing(i, 140.0, now - timedelta(minutes=i))
    return server


@pytest.fixture
def orchestrator(server, store, broadcaster):
    engine = MarketValueEngine(store, ValuationConfig(min_corpus=0))
    orchestrator = SyncOrchestrator(store, make_client(server), broadcaster=broadcaster, engine=engine)
    for name in (StageName.HISTORICAL_SALES, StageName.LIVE_SALES):
        orchestrator.stages[name].page_size = 8
    return orchestrator


@pytest.mark.asyncio
async def test_initial_sync_end_to_end(orchestrator, store, server):
    """
    Integration test: players → sales/listings backfill → market values
    """
    result = await orchestrator.run(SyncType.INITIAL)

    assert result.status == ExecutionStatus.COMPLETED
    assert result.successful_stages == 4

    # Players, including the retired one
    assert len(store.players) == 9
    assert store.players[900].is_retired
    assert store.players[1].primary_position == "ST"

    # Backfills walked every page
    assert len(store.sales) == 30
    assert len(store.listings) == 3
    assert len(server.requests_for("sales")) == 4

    # CB|26|64 is the busiest cell (baseline 50), ST|24|70 trades at twice that
    striker = store.market_values[1]
    assert striker.estimate == pytest.approx(100.0)
    assert striker.method == ValuationMethod.DIRECT
    assert striker.confidence == Confidence.MEDIUM
    assert store.market_values[6].estimate == pytest.approx(50.0)
    assert store.market_values[6].confidence == Confidence.HIGH

    # No sales for goalkeepers
    assert store.market_values[900].sync_stage == PlayerSyncStage.MARKET_UNPRICED


@pytest.mark.asyncio
async def test_daily_sync_only_fetches_new_records(orchestrator, store, server):
    await orchestrator.run(SyncType.INITIAL)
    sales_requests = len(server.requests_for("sales"))

    now = datetime.utcnow()
    server.add_sale(40, 120.0, now, position="ST", overall=72)
    server.add_sale(41, 130.0, now + timedelta(seconds=1), position="ST", overall=72)

    result = await orchestrator.run(SyncType.DAILY)

    assert result.status == ExecutionStatus.COMPLETED
    assert sorted(result.skipped_stages) == ["listings_historical", "sales_historical"]
    assert result.stage_results["sales_live"].records_processed == 2
    assert result.stage_results["listings_live"].records_processed == 0
    assert len(store.sales) == 32
    # One page reaches the watermark
    assert len(server.requests_for("sales")) == sales_requests + 1


@pytest.mark.asyncio
async def test_repeated_runs_do_not_duplicate(orchestrator, store):
    await orchestrator.run(SyncType.INITIAL)
    await orchestrator.run(SyncType.FULL)

    assert len(store.players) == 9
    assert len(store.sales) == 30
    assert len(store.listings) == 3


@pytest.mark.asyncio
async def test_chunked_backfill_through_orchestrator(orchestrator, store):
    orchestrator.chunk_max_pages = 1

    run = await orchestrator.run_chunk(StageName.HISTORICAL_SALES, max_pages=1)
    assert run.result.continue_from == "8"

    chunks = 1
    continue_from = run.result.continue_from
    while continue_from:
        run = await orchestrator.run_chunk(StageName.HISTORICAL_SALES, max_pages=1, continue_from=continue_from)
        continue_from = run.result.continue_from
        chunks += 1

    assert run.result.is_complete
    assert chunks == 4
    assert len(store.sales) == 30


@pytest.mark.asyncio
async def test_progress_events_cover_every_stage(orchestrator, broadcaster):
    result = await orchestrator.run(SyncType.INITIAL)

    stages = {u.stage for u in broadcaster.history(result.execution_id)}

    assert stages == {"sync", "players_import", "sales_historical", "listings_historical", "market_values"}


@pytest.mark.asyncio
async def test_players_referenced_by_sales_are_imported_by_id(orchestrator, store, server):
    """
    Integration test: a sale's player is missing from the players listing but
    served by /players/{id}; the sales backfill imports it and it gets priced
    """
    server.unlisted_players = [player_payload(10_021, position="ST", overall=72)]

    result = await orchestrator.run(SyncType.INITIAL)

    assert result.status == ExecutionStatus.COMPLETED
    assert len(store.players) == 10
    assert store.players[10_021].primary_position == "ST"
    assert result.stage_results["sales_historical"].metadata["missing_players_imported"] == 1
    # Ids the marketplace does not know are looked up once per stage and skipped
    assert len(server.requests_for("player")) == 30 + 3
    assert store.market_values[10_021].estimate == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_live_backlog_is_not_skipped(orchestrator, store, server):
    await orchestrator.run(SyncType.INITIAL)
    now = datetime.utcnow()
    for i in range(20):
        server.add_sale(100 + i, 120.0, now + timedelta(seconds=i), position="ST", overall=72)
    orchestrator.context.max_pages = 1

    result = await orchestrator.run(SyncType.DAILY)
    resumes = 0
    while not result.is_complete and resumes < 5:
        result = await orchestrator.resume(result.orchestrator_id)
        resumes += 1

    assert result.is_complete
    assert resumes == 2
    assert result.status == ExecutionStatus.COMPLETED
    assert all(100 + i in store.sales for i in range(20))
    assert len(store.sales) == 50
