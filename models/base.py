from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class ExecutionStatus(str, enum.Enum):
    """Sync execution status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncType(str, enum.Enum):
    """Orchestrator run modes"""
    INITIAL = "initial"
    DAILY = "daily"
    FULL = "full"


class ExecutionType(str, enum.Enum):
    """What triggered an execution"""
    MANUAL = "manual"
    CRON = "cron"
    API = "api"


class StageName(str, enum.Enum):
    """The six sync stages"""
    PLAYERS_IMPORT = "players_import"
    HISTORICAL_SALES = "sales_historical"
    HISTORICAL_LISTINGS = "listings_historical"
    MARKET_VALUES = "market_values"
    LIVE_SALES = "sales_live"
    LIVE_LISTINGS = "listings_live"


class StageStatus(str, enum.Enum):
    """Last known status of a stage"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlayerSyncStage(str, enum.Enum):
    """How far a player record has progressed through the pipeline"""
    BASIC_IMPORTED = "basic_imported"
    MARKET_CALCULATED = "market_calculated"
    MARKET_UNPRICED = "market_unpriced"


class Confidence(str, enum.Enum):
    """Market value confidence tier"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ValuationMethod(str, enum.Enum):
    """How a market value was derived"""
    DIRECT = "direct"
    FALLBACK = "fallback"


class ResourceType(str, enum.Enum):
    """Marketplace resources"""
    PLAYERS = "players"
    SALES = "sales"
    LISTINGS = "listings"


class MultiplierRunStatus(str, enum.Enum):
    """Multiplier matrix build status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
