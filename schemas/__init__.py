"""
Pydantic schemas for data validation and serialization.

Schemas:
    marketplace: Records parsed from marketplace API payloads and market value updates
    sync: Stage results and options, stage/run state, executions, multiplier runs
    api: API endpoint request/response schemas (camelCase on the wire)

Usage:
    from schemas.marketplace import PlayerRecord, SaleRecord
    from schemas.sync import StageResult, RunState
    from schemas.api import SyncRunRequest, SyncRunResponse

Example:
    # Parse one player from the API
    record = PlayerRecord.from_api(payload, is_retired=False)
    assert record.primary_position == record.positions[0]

Validation:
    Malformed API records raise ValueError at parse time; the client turns
    that into a per-record failure instead of failing the page.
"""

__all__ = [
    "PlayerRecord",
    "SaleRecord",
    "ListingRecord",
    "MarketValueUpdate",
    "StageResult",
    "StageOptions",
    "StageState",
    "RunState",
    "ExecutionInfo",
    "SyncRunRequest",
    "SyncRunResponse",
    "HealthCheckResponse",
]
