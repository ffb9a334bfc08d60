"""
Market value estimation from observed sales.

Modules:
    buckets: Position groups and fixed-width age/overall bucketing
    statistics: Central tendency and IQR outlier trimming over prices
    multipliers: The multiplier matrix and its baseline cell
    engine: Player pricing, matrix caching and batched write-back

Usage:
    from valuation import MarketValueEngine

    engine = MarketValueEngine(store)
    result = await engine.run(force_update=True)
"""

from valuation.buckets import BucketKey, BucketScheme, POSITION_GROUPS
from valuation.multipliers import MultiplierCell, MultiplierMatrix, build_matrix
from valuation.engine import MarketValueEngine, ValuationConfig, MarketValueRunResult

__all__ = [
    "BucketKey",
    "BucketScheme",
    "POSITION_GROUPS",
    "MultiplierCell",
    "MultiplierMatrix",
    "build_matrix",
    "MarketValueEngine",
    "ValuationConfig",
    "MarketValueRunResult",
]
