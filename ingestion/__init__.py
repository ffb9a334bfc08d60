"""
Sync pipeline components for the marketplace ingestion.

This package contains everything between the marketplace API and the database:

Modules:
    base: Page / MarketplaceSource abstraction over the paginated API
    rate_limiter: Sliding-window rate limiter shared by all outbound calls
    progress: In-process progress broadcasting keyed by execution id
    chunking: Bounded, resumable chunks of a chunkable stage
    runner: Sync orchestrator (run modes, run state, stop, resume)
    scheduler: APScheduler integration for the daily sync and resume sweeps
    runtime: Production wiring shared by the API and the CLI

Subpackages:
    extractors: Marketplace API client with retry and backoff
    loaders: Record store interface and its PostgreSQL implementation
    stages: The six sync stages

Architecture:
    Stages run in a fixed order: players import, historical sales,
    historical listings, market values, live sales, live listings.

    Every stage returns a StageResult instead of raising; every write is an
    upsert, so any stage or chunk can be repeated safely.

Usage:
    from ingestion.runtime import build_runtime
    from models.base import SyncType

    runtime = build_runtime()
    result = await runtime.orchestrator.run(SyncType.DAILY)

    print(f"{result.successful_stages}/{result.total_stages} stages succeeded")

Error Handling:
    All components use the exception hierarchy in core.exceptions. Network
    and rate limit errors are retried inside the client; anything else ends
    the stage with success=False and is recorded on the execution.
"""

__all__ = [
    "MarketplaceSource",
    "Page",
    "SlidingWindowRateLimiter",
    "ProgressBroadcaster",
    "ChunkController",
    "SyncOrchestrator",
    "SyncScheduler",
    "MarketplaceClient",
    "PostgresRecordStore",
]
