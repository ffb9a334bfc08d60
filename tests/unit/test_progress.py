"""
Unit tests for progress broadcasting
"""

import asyncio
import pytest
from ingestion.progress import (
    ProgressBroadcaster,
    ProgressReporter,
    ProgressStatus,
    ProgressUpdate,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def update(stage="players_import", status=ProgressStatus.PROGRESS, processed=0):
    return ProgressUpdate(stage, status, records_processed=processed)


class TestProgressBroadcaster:
    """Test subscription lifecycle and delivery"""

    def test_publish_reaches_subscribers_of_execution_only(self):
        broadcaster = ProgressBroadcaster()
        first, other = [], []
        broadcaster.subscribe(1, first.append)
        broadcaster.subscribe(2, other.append)

        delivered = broadcaster.publish(1, update(processed=10))

        assert delivered == 1
        assert [u.records_processed for u in first] == [10]
        assert other == []

    def test_late_subscriber_gets_history(self):
        broadcaster = ProgressBroadcaster()
        broadcaster.publish(1, update(processed=1))
        broadcaster.publish(1, update(processed=2))
        received = []

        broadcaster.subscribe(1, received.append)

        assert [u.records_processed for u in received] == [1, 2]

    def test_replay_can_be_disabled(self):
        broadcaster = ProgressBroadcaster()
        broadcaster.publish(1, update())
        received = []

        broadcaster.subscribe(1, received.append, replay=False)

        assert received == []

    def test_history_is_bounded(self):
        broadcaster = ProgressBroadcaster(history_limit=3)

        for i in range(10):
            broadcaster.publish(1, update(processed=i))

        assert [u.records_processed for u in broadcaster.history(1)] == [7, 8, 9]

    def test_oldest_execution_history_evicted(self):
        broadcaster = ProgressBroadcaster(max_executions=2)

        for execution_id in (1, 2, 3):
            broadcaster.publish(execution_id, update())

        assert broadcaster.history(1) == []
        assert len(broadcaster.history(3)) == 1

    def test_unsubscribe_is_idempotent(self):
        broadcaster = ProgressBroadcaster()
        received = []
        subscription = broadcaster.subscribe(1, received.append)

        subscription.unsubscribe()
        subscription.unsubscribe()
        broadcaster.publish(1, update())

        assert received == []
        assert not subscription.active
        assert broadcaster.subscriber_count(1) == 0

    def test_raising_callback_is_dropped(self):
        broadcaster = ProgressBroadcaster()
        healthy = []

        def closed_channel(_):
            raise RuntimeError("channel closed")

        broken = broadcaster.subscribe(1, closed_channel)
        broadcaster.subscribe(1, healthy.append)

        delivered = broadcaster.publish(1, update())

        assert delivered == 1
        assert not broken.active
        assert broadcaster.subscriber_count(1) == 1
        assert len(healthy) == 1

    def test_close_signal_ends_subscription(self):
        broadcaster = ProgressBroadcaster()
        received = []
        close_signal = asyncio.Event()
        subscription = broadcaster.subscribe(1, received.append, close_signal=close_signal)

        close_signal.set()
        broadcaster.publish(1, update())

        assert received == []
        assert not subscription.active

    def test_expired_subscription_swept(self):
        clock = FakeClock()
        broadcaster = ProgressBroadcaster(max_lifetime=30, clock=clock)
        received = []
        broadcaster.subscribe(1, received.append)
        broadcaster.subscribe(2, received.append, max_lifetime=300)

        clock.now = 31
        swept = broadcaster.sweep()

        assert swept == 1
        assert broadcaster.subscriber_count(1) == 0
        assert broadcaster.subscriber_count(2) == 1

    def test_expired_subscriptions_of_quiet_executions_dropped_on_publish(self):
        clock = FakeClock()
        broadcaster = ProgressBroadcaster(max_lifetime=10, sweep_interval=60, clock=clock)
        for execution_id in range(100):
            broadcaster.subscribe(execution_id, lambda u: None)

        clock.now = 1000
        broadcaster.publish(500, update())

        assert sum(broadcaster.subscriber_count(i) for i in range(100)) == 0

    def test_expired_subscriptions_of_quiet_executions_dropped_on_subscribe(self):
        clock = FakeClock()
        broadcaster = ProgressBroadcaster(max_lifetime=10, sweep_interval=60, clock=clock)
        for execution_id in range(100):
            broadcaster.subscribe(execution_id, lambda u: None)

        clock.now = 1000
        broadcaster.subscribe(500, lambda u: None)

        assert sum(broadcaster.subscriber_count(i) for i in range(100)) == 0
        assert broadcaster.subscriber_count(500) == 1

    def test_background_sweep_runs_at_most_once_per_interval(self):
        clock = FakeClock()
        broadcaster = ProgressBroadcaster(max_lifetime=10, sweep_interval=60, clock=clock)
        broadcaster.subscribe(1, lambda u: None)

        clock.now = 30
        broadcaster.publish(2, update())
        assert broadcaster.subscriber_count(1) == 1

        clock.now = 60
        broadcaster.publish(2, update())
        assert broadcaster.subscriber_count(1) == 0

    def test_clear_drops_subscribers_and_history(self):
        broadcaster = ProgressBroadcaster()
        broadcaster.subscribe(1, lambda u: None)
        broadcaster.publish(1, update())

        broadcaster.clear(1)

        assert broadcaster.subscriber_count(1) == 0
        assert broadcaster.history(1) == []


class TestProgressUpdate:
    def test_percentage(self):
        assert ProgressUpdate("s", ProgressStatus.PROGRESS, current=1, total=4).percentage == 25.0
        assert ProgressUpdate("s", ProgressStatus.PROGRESS, current=9, total=4).percentage == 100.0
        assert ProgressUpdate("s", ProgressStatus.PROGRESS).percentage is None

    def test_event_shape(self):
        event = ProgressUpdate("historical_sales", ProgressStatus.COMPLETED, records_processed=5).to_event(7)

        assert event["type"] == "progress"
        assert event["executionId"] == 7
        assert event["status"] == "completed"
        assert event["recordsProcessed"] == 5


class TestProgressReporter:
    def test_reporter_tags_stage(self):
        broadcaster = ProgressBroadcaster()
        reporter = ProgressReporter(broadcaster, 3, "live_sales")

        reporter.started()
        reporter.progress(10, 1, current=1, total=2)
        reporter.completed(10, 1)

        statuses = [u.status for u in broadcaster.history(3)]
        assert statuses == [ProgressStatus.STARTED, ProgressStatus.PROGRESS, ProgressStatus.COMPLETED]
        assert all(u.stage == "live_sales" for u in broadcaster.history(3))

    def test_reporter_without_execution_publishes_nothing(self):
        broadcaster = ProgressBroadcaster()
        reporter = ProgressReporter(broadcaster, None, "live_sales")

        reporter.failed("boom")

        assert broadcaster.history(None) == []

    def test_reporter_without_broadcaster_is_noop(self):
        ProgressReporter(None, 1, "live_sales").cancelled()
