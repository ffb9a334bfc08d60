"""
In-process progress broadcasting keyed by execution id.

Stages publish ProgressUpdates through a ProgressReporter; listeners (the
SSE endpoint, tests) subscribe with a callback and get a Subscription handle
back. A subscription ends when it is unsubscribed, when its close signal is
set, when its callback raises (closed channel) or when its lifetime runs out.
"""

import asyncio
import enum
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Any
import logging

logger = logging.getLogger(__name__)


class ProgressStatus(str, enum.Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ProgressUpdate:
    stage: str
    status: ProgressStatus
    message: str = ""
    current: Optional[int] = None
    total: Optional[int] = None
    records_processed: int = 0
    records_failed: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def percentage(self) -> Optional[float]:
        if self.current is None or not self.total:
            return None
        return round(min(100.0, self.current / self.total * 100), 1)

    def to_event(self, execution_id: Any) -> Dict[str, Any]:
        return {
            "type": "progress",
            "executionId": execution_id,
            "stage": self.stage,
            "status": self.status.value,
            "message": self.message,
            "progress": {
                "current": self.current,
                "total": self.total,
                "percentage": self.percentage,
            },
            "recordsProcessed": self.records_processed,
            "recordsFailed": self.records_failed,
            "timestamp": self.timestamp.isoformat(),
        }


ProgressCallback = Callable[[ProgressUpdate], None]


class Subscription:
    """Handle returned by ProgressBroadcaster.subscribe"""

    def __init__(
        self,
        broadcaster: "ProgressBroadcaster",
        execution_id: Any,
        callback: ProgressCallback,
        close_signal: Optional[asyncio.Event],
        expires_at: Optional[float]
    ):
        self.id = uuid.uuid4().hex
        self.execution_id = execution_id
        self.callback = callback
        self.close_signal = close_signal
        self.expires_at = expires_at
        self._broadcaster = broadcaster
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def is_stale(self, now: float) -> bool:
        if not self._active:
            return True
        if self.close_signal is not None and self.close_signal.is_set():
            return True
        return self.expires_at is not None and now >= self.expires_at

    def unsubscribe(self):
        """Idempotent"""
        if self._active:
            self._broadcaster._remove(self)

    def _deactivate(self):
        self._active = False


class ProgressBroadcaster:
    """
    Fan progress updates out to every live subscriber of an execution.

    Keeps the last `history_limit` updates per execution so late subscribers
    can catch up, and the histories of the last `max_executions` executions.
    Stale subscriptions of every execution are swept at most once per
    `sweep_interval` seconds, from subscribe() and publish().
    """

    def __init__(
        self,
        history_limit: int = 50,
        max_lifetime: Optional[float] = None,
        max_executions: int = 100,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.history_limit = history_limit
        self.max_lifetime = max_lifetime
        self.max_executions = max_executions
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._next_sweep = clock() + sweep_interval
        self._subscribers: Dict[Any, List[Subscription]] = {}
        self._history: "OrderedDict[Any, Deque[ProgressUpdate]]" = OrderedDict()

    def subscribe(
        self,
        execution_id: Any,
        callback: ProgressCallback,
        close_signal: Optional[asyncio.Event] = None,
        max_lifetime: Optional[float] = None,
        replay: bool = True
    ) -> Subscription:
        """
        Register `callback` for updates of `execution_id`.

        Args:
            close_signal: Setting this event ends the subscription
            max_lifetime: Seconds after which the subscription is dropped
                (defaults to the broadcaster's max_lifetime)
            replay: Deliver retained history before live updates
        """
        self._maybe_sweep()
        lifetime = max_lifetime if max_lifetime is not None else self.max_lifetime
        expires_at = self._clock() + lifetime if lifetime is not None else None

        subscription = Subscription(self, execution_id, callback, close_signal, expires_at)
        self._subscribers.setdefault(execution_id, []).append(subscription)
        logger.debug(f"Subscriber {subscription.id} attached to execution {execution_id}")

        if replay:
            for update in list(self._history.get(execution_id, ())):
                if not self._deliver(subscription, update):
                    break

        return subscription

    def publish(self, execution_id: Any, update: ProgressUpdate) -> int:
        """
        Record `update` and deliver it to current subscribers.

        Returns:
            Number of subscribers the update was delivered to
        """
        self._maybe_sweep()

        history = self._history.get(execution_id)
        if history is None:
            history = deque(maxlen=self.history_limit)
            self._history[execution_id] = history
            while len(self._history) > self.max_executions:
                self._history.popitem(last=False)
        else:
            self._history.move_to_end(execution_id)
        history.append(update)

        delivered = 0
        now = self._clock()
        for subscription in list(self._subscribers.get(execution_id, ())):
            if subscription.is_stale(now):
                self._remove(subscription)
                continue
            if self._deliver(subscription, update):
                delivered += 1
        return delivered

    def _deliver(self, subscription: Subscription, update: ProgressUpdate) -> bool:
        try:
            subscription.callback(update)
            return True
        except Exception as e:
            # Closed channel
            logger.debug(f"Dropping subscriber {subscription.id}: {type(e).__name__}: {str(e)}")
            self._remove(subscription)
            return False

    def _remove(self, subscription: Subscription):
        subscription._deactivate()
        subscribers = self._subscribers.get(subscription.execution_id)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.execution_id]

    def sweep(self) -> int:
        """Drop stale subscriptions for every execution, returns how many"""
        now = self._clock()
        self._next_sweep = now + self.sweep_interval
        stale = [
            subscription
            for subscribers in self._subscribers.values()
            for subscription in subscribers
            if subscription.is_stale(now)
        ]
        for subscription in stale:
            self._remove(subscription)
        if stale:
            logger.debug(f"Swept {len(stale)} stale progress subscriptions")
        return len(stale)

    def _maybe_sweep(self):
        if self._clock() >= self._next_sweep:
            self.sweep()

    def subscriber_count(self, execution_id: Any) -> int:
        return len(self._subscribers.get(execution_id, ()))

    def history(self, execution_id: Any) -> List[ProgressUpdate]:
        return list(self._history.get(execution_id, ()))

    def clear(self, execution_id: Any):
        for subscription in list(self._subscribers.get(execution_id, ())):
            self._remove(subscription)
        self._history.pop(execution_id, None)


class ProgressReporter:
    """Stage-scoped helper; a reporter without an execution id publishes nothing"""

    def __init__(self, broadcaster: Optional[ProgressBroadcaster], execution_id: Any, stage: str):
        self.broadcaster = broadcaster
        self.execution_id = execution_id
        self.stage = stage

    def _publish(self, update: ProgressUpdate):
        if self.broadcaster is not None and self.execution_id is not None:
            self.broadcaster.publish(self.execution_id, update)

    def started(self, message: str = ""):
        self._publish(ProgressUpdate(self.stage, ProgressStatus.STARTED, message or f"{self.stage} started"))

    def progress(
        self,
        records_processed: int,
        records_failed: int = 0,
        current: Optional[int] = None,
        total: Optional[int] = None,
        message: str = ""
    ):
        self._publish(ProgressUpdate(
            self.stage,
            ProgressStatus.PROGRESS,
            message,
            current=current,
            total=total,
            records_processed=records_processed,
            records_failed=records_failed,
        ))

    def completed(self, records_processed: int, records_failed: int = 0, message: str = ""):
        self._publish(ProgressUpdate(
            self.stage,
            ProgressStatus.COMPLETED,
            message or f"{self.stage} completed",
            records_processed=records_processed,
            records_failed=records_failed,
        ))

    def failed(self, error: str, records_processed: int = 0, records_failed: int = 0):
        self._publish(ProgressUpdate(
            self.stage,
            ProgressStatus.FAILED,
            error,
            records_processed=records_processed,
            records_failed=records_failed,
        ))

    def cancelled(self, records_processed: int = 0, records_failed: int = 0):
        self._publish(ProgressUpdate(
            self.stage,
            ProgressStatus.CANCELLED,
            f"{self.stage} cancelled",
            records_processed=records_processed,
            records_failed=records_failed,
        ))
