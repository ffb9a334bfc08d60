"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (ExecutionStatus, StageName, ...)
    player: Canonical player records and their market value fields
    market: Sales and listings with the player snapshot at time of sale
    sync_execution: Sync run tracking and per-stage results
    checkpoint: Per-stage resume state and per-orchestrator run state
    market_multiplier: Multiplier matrix builds and their cached cells

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features like JSONB for flexible payloads.

Usage:
    from models import Player, Sale, SyncExecution
    from models.base import StageName, ExecutionStatus

Relationships:
    - Sale.player_id / Listing.player_id → Player.id (not enforced; sales may
      arrive before their player)
    - OrchestratorRunState.execution_id → SyncExecution.id
"""

from models.base import Base, ExecutionStatus, SyncType, StageName
from models.player import Player
from models.market import Sale, Listing
from models.sync_execution import SyncExecution
from models.checkpoint import SyncStageState, OrchestratorRunState
from models.market_multiplier import MultiplierRun

__all__ = [
    "Base",
    "ExecutionStatus",
    "SyncType",
    "StageName",
    "Player",
    "Sale",
    "Listing",
    "SyncExecution",
    "SyncStageState",
    "OrchestratorRunState",
    "MultiplierRun",
]
