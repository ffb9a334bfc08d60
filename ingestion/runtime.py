"""
Wiring of the production collaborators, shared by the API process and the CLI
"""

from dataclasses import dataclass
from typing import Optional
import logging

from core.config import settings
from core.database import async_session_maker
from ingestion.extractors.marketplace_client import MarketplaceClient
from ingestion.loaders.postgres_loader import PostgresRecordStore
from ingestion.progress import ProgressBroadcaster
from ingestion.rate_limiter import SlidingWindowRateLimiter
from ingestion.runner import SyncOrchestrator
from valuation.engine import MarketValueEngine

logger = logging.getLogger(__name__)


@dataclass
class SyncRuntime:
    store: PostgresRecordStore
    client: MarketplaceClient
    broadcaster: ProgressBroadcaster
    engine: MarketValueEngine
    orchestrator: SyncOrchestrator

    async def aclose(self):
        await self.client.aclose()
        await self.store.release_run_lock()


def build_runtime(time_budget_seconds: Optional[float] = None) -> SyncRuntime:
    """One rate limiter, one client and one broadcaster per process"""
    store = PostgresRecordStore(async_session_maker)
    rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    client = MarketplaceClient(rate_limiter)
    broadcaster = ProgressBroadcaster(
        history_limit=settings.PROGRESS_HISTORY_LIMIT,
        max_lifetime=settings.PROGRESS_STREAM_MAX_SECONDS,
        sweep_interval=settings.PROGRESS_SWEEP_INTERVAL_SECONDS,
    )
    engine = MarketValueEngine(store)
    orchestrator = SyncOrchestrator(
        store,
        client,
        broadcaster=broadcaster,
        engine=engine,
        time_budget_seconds=time_budget_seconds,
    )

    logger.info(
        f"Sync runtime ready: {settings.MARKETPLACE_API_URL}, "
        f"{settings.RATE_LIMIT_MAX_REQUESTS} requests/{settings.RATE_LIMIT_WINDOW_SECONDS}s"
    )
    return SyncRuntime(
        store=store,
        client=client,
        broadcaster=broadcaster,
        engine=engine,
        orchestrator=orchestrator,
    )
