"""
Unit tests for the sync stages
"""

import pytest
from datetime import datetime, timedelta
from conftest import BASE_TIME, FakeMarketplaceSource, make_listing, make_player, make_sale
from core.exceptions import NetworkError, StoreError, UpsertError
from ingestion.base import RecordFailure
from ingestion.progress import ProgressStatus
from ingestion.stages.base import StageContext
from ingestion.stages.historical import HistoricalSalesStage, HistoricalListingsStage
from ingestion.stages.live import LiveListingsStage, LiveSalesStage, decode_walk
from ingestion.stages.market_values import MarketValuesStage
from ingestion.stages.players_import import PlayersImportStage, decode_cursor
from models.base import ExecutionStatus, ResourceType, StageName, StageStatus
from schemas.sync import StageOptions, StageState
from valuation.engine import MarketValueEngine, ValuationConfig


def make_context(source, store, broadcaster=None, write_batch_size=100, engine=None):
    return StageContext(
        source=source,
        store=store,
        broadcaster=broadcaster,
        engine=engine,
        write_batch_size=write_batch_size,
        max_pages=1000,
    )


class TestPlayersImportStage:
    """Test the players import stage"""

    @pytest.mark.asyncio
    async def test_imports_active_and_retired_players(self, source, store):
        stage = PlayersImportStage(make_context(source, store), page_size=3)

        result = await stage.run()

        assert result.success
        assert result.is_complete
        assert result.records_processed == 11
        assert sorted(store.players) == [1, 2, 3, 4, 5, 6, 7, 8, 101, 102, 103]
        assert store.players[101].is_retired
        assert store.market_values == {}

    @pytest.mark.asyncio
    async def test_segments_use_retired_filter(self, source, store):
        stage = PlayersImportStage(make_context(source, store), page_size=3)

        await stage.run()

        flags = {r["is_retired"] for r in source.requests}
        assert flags == {True, False}

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, source, store):
        stage = PlayersImportStage(make_context(source, store), page_size=3)

        await stage.run()
        second = await stage.run()

        assert second.success
        assert len(store.players) == 11
        state = store.stage_states[StageName.PLAYERS_IMPORT]
        assert state.total_runs == 2
        assert state.status == StageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_malformed_records_counted_not_fatal(self, source, store):
        source.malformed[ResourceType.PLAYERS] = [RecordFailure("77", "missing metadata")]
        stage = PlayersImportStage(make_context(source, store), page_size=3)

        result = await stage.run()

        assert result.success
        assert result.records_processed == 11
        # Reported once per segment's first page
        assert result.records_failed == 2
        assert "record 77: missing metadata" in result.errors[0]

    @pytest.mark.asyncio
    async def test_chunked_import_continues_until_complete(self, source, store):
        stage = PlayersImportStage(make_context(source, store), page_size=3)

        first = await stage.run(StageOptions(max_pages=2))

        assert not first.is_complete
        cursor = decode_cursor(first.continue_from)
        assert cursor["active"] == {"before": "3", "done": False}
        assert cursor["retired"] == {"before": "103", "done": False}

        second = await stage.run(StageOptions(max_pages=2, continue_from=first.continue_from))
        third = await stage.run(StageOptions(max_pages=2, continue_from=second.continue_from))

        assert third.is_complete
        assert third.continue_from is None
        assert first.records_processed + second.records_processed + third.records_processed == 11

    @pytest.mark.asyncio
    async def test_page_failure_keeps_written_players(self, source, store):
        source.fail_request(ResourceType.PLAYERS, 3)
        stage = PlayersImportStage(make_context(source, store), page_size=3)

        result = await stage.run()

        assert not result.success
        assert not result.is_complete
        assert result.records_processed == 6
        assert "players request failed" in result.errors
        assert store.stage_states[StageName.PLAYERS_IMPORT].status == StageStatus.FAILED

    @pytest.mark.asyncio
    async def test_failing_batch_counts_only_that_batch(self, store):
        players = [make_player(i) for i in range(1, 1001)]
        source = FakeMarketplaceSource(players=players)
        store.inject_failure("upsert_players", on_call=2)
        stage = PlayersImportStage(make_context(source, store, write_batch_size=500), page_size=1500)

        result = await stage.run()

        assert not result.success
        assert result.records_processed == 500
        assert result.records_failed == 500
        assert len(store.players) == 500

    @pytest.mark.asyncio
    async def test_invalid_cursor_fails_stage(self, source, store):
        stage = PlayersImportStage(make_context(source, store))

        result = await stage.run(StageOptions(continue_from="not-json"))

        assert not result.success
        assert result.first_error == "Invalid players continuation cursor"

    @pytest.mark.asyncio
    async def test_progress_published(self, source, store, broadcaster):
        execution = await store.create_execution()
        stage = PlayersImportStage(make_context(source, store, broadcaster), page_size=3)

        await stage.run(StageOptions(execution_id=execution.id))

        statuses = [u.status for u in broadcaster.history(execution.id)]
        assert statuses[0] == ProgressStatus.STARTED
        assert ProgressStatus.PROGRESS in statuses
        assert statuses[-1] == ProgressStatus.COMPLETED


class TestHistoricalStages:
    """Test one-time backfills"""

    @pytest.mark.asyncio
    async def test_backfill_completes_and_seeds_live_watermark(self, source, store):
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert result.success
        assert result.is_complete
        assert result.records_processed == 12
        state = store.stage_states[StageName.HISTORICAL_SALES]
        assert state.completed_at is not None
        assert state.cursor is None
        live = store.stage_states[StageName.LIVE_SALES]
        assert live.watermark == BASE_TIME - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_completed_backfill_is_skipped(self, source, store):
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)
        await stage.run()
        requests_before = len(source.requests)

        result = await stage.run()

        assert result.skipped
        assert result.success
        assert result.records_processed == 0
        assert len(source.requests) == requests_before

    @pytest.mark.asyncio
    async def test_force_reimports(self, source, store):
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)
        await stage.run()

        result = await stage.run(StageOptions(force=True))

        assert not result.skipped
        assert result.records_processed == 12
        assert len(store.sales) == 12

    @pytest.mark.asyncio
    async def test_resumes_from_checkpoint_after_failure(self, source, store):
        source.fail_request(ResourceType.SALES, 2)
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)

        failed = await stage.run()
        assert not failed.success
        assert failed.records_processed == 5
        assert store.stage_states[StageName.HISTORICAL_SALES].cursor == "5"

        resumed = await stage.run()

        assert resumed.success
        assert resumed.is_complete
        assert resumed.records_processed == 7
        assert source.requests[2]["cursor"] == "5"
        assert len(store.sales) == 12

    @pytest.mark.asyncio
    async def test_chunk_returns_continuation(self, source, store):
        stage = HistoricalListingsStage(make_context(source, store), page_size=2)

        result = await stage.run(StageOptions(max_pages=1))

        assert result.success
        assert not result.is_complete
        assert result.continue_from == "502"
        assert store.stage_states[StageName.HISTORICAL_LISTINGS].completed_at is None

    @pytest.mark.asyncio
    async def test_existing_live_watermark_not_overwritten(self, source, store):
        kept = BASE_TIME + timedelta(days=1)
        await store.save_stage_state(StageState(stage_name=StageName.LIVE_SALES, watermark=kept))
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)

        await stage.run()

        assert store.stage_states[StageName.LIVE_SALES].watermark == kept

    @pytest.mark.asyncio
    async def test_stop_request_honoured_at_page_boundary(self, source, store):
        execution = await store.create_execution()

        async def stop_after_first_page(resource, number):
            if number == 1:
                await store.cancel_running_executions("stop")

        source.on_fetch = stop_after_first_page
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)

        result = await stage.run(StageOptions(execution_id=execution.id))

        assert result.cancelled
        assert result.success
        assert not result.is_complete
        assert result.records_processed == 5
        assert store.executions[execution.id].status == ExecutionStatus.CANCELLED
        assert store.stage_states[StageName.HISTORICAL_SALES].status == StageStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_state_read_failure_is_hard_failure(self, source, store):
        store.inject_failure("get_stage_state", error=StoreError("database unavailable"))
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert not result.success
        assert result.errors == ["database unavailable"]
        assert source.requests == []


class TestLiveStages:
    """Test watermark-driven incremental sync"""

    @pytest.mark.asyncio
    async def test_first_run_takes_newest_page_only(self, source, store):
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert result.success
        assert result.records_processed == 5
        assert source.request_count(ResourceType.SALES) == 1
        assert store.stage_states[StageName.LIVE_SALES].watermark == BASE_TIME - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_stops_at_watermark(self, source, store):
        stage = LiveSalesStage(make_context(source, store), page_size=5)
        await stage.run()
        source.sales.extend([
            make_sale(13, purchased_at=BASE_TIME + timedelta(minutes=1)),
            make_sale(14, purchased_at=BASE_TIME + timedelta(minutes=2)),
        ])

        result = await stage.run()

        assert result.records_processed == 2
        assert source.request_count(ResourceType.SALES) == 2
        assert result.metadata["watermark"] == (BASE_TIME + timedelta(minutes=2)).isoformat()
        assert 13 in store.sales and 14 in store.sales

    @pytest.mark.asyncio
    async def test_walks_pages_until_watermark(self, source, store):
        await store.save_stage_state(StageState(
            stage_name=StageName.LIVE_SALES,
            watermark=BASE_TIME - timedelta(minutes=11),
        ))
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        # Sales 1-10 are newer than the watermark, sale 11 is not
        assert result.records_processed == 10
        assert source.request_count(ResourceType.SALES) == 3

    @pytest.mark.asyncio
    async def test_failure_keeps_watermark(self, source, store):
        watermark = BASE_TIME - timedelta(minutes=11)
        await store.save_stage_state(StageState(stage_name=StageName.LIVE_SALES, watermark=watermark))
        source.fail_request(ResourceType.SALES, 2)
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert not result.success
        assert result.records_processed == 5
        assert store.stage_states[StageName.LIVE_SALES].watermark == watermark

    @pytest.mark.asyncio
    async def test_nothing_new(self, source, store):
        newest = BASE_TIME
        await store.save_stage_state(StageState(stage_name=StageName.LIVE_SALES, watermark=newest))
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert result.success
        assert result.records_processed == 0
        assert "watermark" not in result.metadata

    @pytest.mark.asyncio
    async def test_backlog_beyond_page_budget_is_finished_by_later_runs(self, source, store):
        watermark = BASE_TIME - timedelta(minutes=11)
        await store.save_stage_state(StageState(stage_name=StageName.LIVE_SALES, watermark=watermark))
        stage = LiveSalesStage(make_context(source, store), page_size=2)
        options = StageOptions(max_pages=2)

        first = await stage.run(options)

        assert first.success
        assert not first.is_complete
        assert decode_walk(first.continue_from)["before"] == "4"
        assert sorted(store.sales) == [1, 2, 3, 4]
        state = store.stage_states[StageName.LIVE_SALES]
        assert state.watermark == watermark
        assert state.cursor == first.continue_from

        second = await stage.run(options)

        assert not second.is_complete
        assert sorted(store.sales) == list(range(1, 9))
        assert store.stage_states[StageName.LIVE_SALES].watermark == watermark

        third = await stage.run(options)

        # Sales 1-10 are newer than the watermark, sale 11 is not
        assert third.is_complete
        assert sorted(store.sales) == list(range(1, 11))
        state = store.stage_states[StageName.LIVE_SALES]
        assert state.watermark == BASE_TIME - timedelta(minutes=1)
        assert state.cursor is None
        assert third.metadata["watermark"] == (BASE_TIME - timedelta(minutes=1)).isoformat()

    @pytest.mark.asyncio
    async def test_records_arriving_mid_backlog_are_picked_up_after_it(self, source, store):
        watermark = BASE_TIME - timedelta(minutes=11)
        await store.save_stage_state(StageState(stage_name=StageName.LIVE_SALES, watermark=watermark))
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        await stage.run(StageOptions(max_pages=1))
        source.sales.append(make_sale(13, purchased_at=BASE_TIME + timedelta(minutes=1)))
        await stage.run(StageOptions(max_pages=1))
        caught_up = await stage.run(StageOptions(max_pages=1))

        # The walk finishes the old backlog first
        assert caught_up.is_complete
        assert 13 not in store.sales
        assert store.stage_states[StageName.LIVE_SALES].watermark == BASE_TIME - timedelta(minutes=1)

        result = await stage.run(StageOptions(max_pages=1))

        assert result.records_processed == 1
        assert sorted(store.sales) == list(range(1, 11)) + [13]
        assert store.stage_states[StageName.LIVE_SALES].watermark == BASE_TIME + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_unreadable_resume_cursor_restarts_from_newest(self, source, store):
        watermark = BASE_TIME - timedelta(minutes=11)
        await store.save_stage_state(StageState(
            stage_name=StageName.LIVE_SALES,
            watermark=watermark,
            cursor="not-json",
        ))
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert result.success
        assert result.records_processed == 10
        assert source.requests[0]["cursor"] is None


class TestMissingPlayerImport:
    """Test importing players that sales and listings reference before the players import has them"""

    @pytest.mark.asyncio
    async def test_historical_sales_import_unknown_players(self, source, store):
        await store.upsert_players([make_player(i) for i in range(1, 9)])
        source.unlisted_players = [make_player(12)]
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert result.success
        assert source.player_lookups == [9, 10, 11, 12]
        assert 12 in store.players
        assert result.metadata["missing_players_imported"] == 1
        assert result.metadata["missing_players_unresolved"] == [9, 10, 11]
        # Sales are kept whether or not their player could be imported
        assert len(store.sales) == 12

    @pytest.mark.asyncio
    async def test_known_players_are_not_fetched(self, source, store):
        await store.upsert_players([make_player(i) for i in range(1, 13)])
        stage = HistoricalSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert source.player_lookups == []
        assert "missing_players_imported" not in result.metadata

    @pytest.mark.asyncio
    async def test_live_sales_import_unknown_players(self, source, store):
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert result.success
        assert sorted(store.players) == [1, 2, 3, 4, 5]
        assert result.metadata["missing_players_imported"] == 5

    @pytest.mark.asyncio
    async def test_live_listings_import_unknown_players(self, store):
        source = FakeMarketplaceSource(listings=[make_listing(7)])
        source.unlisted_players = [make_player(7)]
        stage = LiveListingsStage(make_context(source, store), page_size=5)

        await stage.run()

        assert 7 in store.players

    @pytest.mark.asyncio
    async def test_marketplace_failure_for_one_player_is_not_fatal(self, source, store):
        source.player_failures[2] = NetworkError("Request timeout for /players/2")
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert result.success
        assert sorted(store.players) == [1, 3, 4, 5]
        assert result.metadata["missing_players_unresolved"] == [2]

    @pytest.mark.asyncio
    async def test_store_failure_writing_players_fails_stage(self, source, store):
        store.inject_failure("upsert_players", error=UpsertError("players insert failed"))
        stage = LiveSalesStage(make_context(source, store), page_size=5)

        result = await stage.run()

        assert not result.success
        assert result.first_error == "players insert failed"
        assert store.stage_states[StageName.LIVE_SALES].watermark is None

    @pytest.mark.asyncio
    async def test_can_be_switched_off(self, source, store):
        context = make_context(source, store)
        context.import_missing_players = False
        stage = HistoricalSalesStage(context, page_size=5)

        await stage.run()

        assert source.player_lookups == []
        assert store.players == {}


class TestMarketValuesStage:
    """Test the stage wrapper around the engine"""

    @staticmethod
    def make_engine(store):
        return MarketValueEngine(store, ValuationConfig(min_corpus=0))

    @staticmethod
    async def seed(store):
        recent = datetime.utcnow() - timedelta(days=1)
        await store.upsert_players([make_player(i) for i in range(1, 4)])
        await store.upsert_sales([make_sale(100 + i, price=80.0, purchased_at=recent) for i in range(10)])

    @pytest.mark.asyncio
    async def test_prices_all_players(self, store):
        await self.seed(store)
        stage = MarketValuesStage(make_context(FakeMarketplaceSource(), store, engine=self.make_engine(store)))

        result = await stage.run()

        assert result.success
        assert result.records_processed == 3
        assert result.metadata["run_id"]
        assert result.metadata["metrics"]["players_priced_direct"] == 3
        assert all(store.market_values[i].estimate == 80.0 for i in range(1, 4))

    @pytest.mark.asyncio
    async def test_is_rerunnable(self, store):
        await self.seed(store)
        stage = MarketValuesStage(make_context(FakeMarketplaceSource(), store, engine=self.make_engine(store)))

        await stage.run()
        second = await stage.run()

        assert not second.skipped
        assert second.records_processed == 3

    @pytest.mark.asyncio
    async def test_store_failure_fails_stage(self, store):
        await self.seed(store)
        store.inject_failure("update_market_values", error=UpsertError("write failed"))
        stage = MarketValuesStage(make_context(FakeMarketplaceSource(), store, engine=self.make_engine(store)))

        result = await stage.run()

        assert not result.success
        assert result.records_failed == 3
        assert result.first_error == "write failed"
