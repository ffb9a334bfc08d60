"""
Central tendency and outlier trimming over sale prices
"""

import pandas as pd

CENTRAL_TENDENCIES = ("mean", "median")


def trim_outliers(prices: pd.Series, iqr_multiplier: float = 2.0, min_keep_ratio: float = 0.5) -> pd.Series:
    """
    Drop prices outside [Q1 - k*IQR, Q3 + k*IQR].

    Never drops more than half of the sample; if the fence would, the
    original series is returned. Samples under 4 prices are not trimmed.
    """
    if len(prices) < 4:
        return prices

    q1 = prices.quantile(0.25)
    q3 = prices.quantile(0.75)
    iqr = q3 - q1
    lower = q1 - iqr_multiplier * iqr
    upper = q3 + iqr_multiplier * iqr

    kept = prices[(prices >= lower) & (prices <= upper)]
    if len(kept) < len(prices) * min_keep_ratio:
        return prices
    return kept


def central_price(prices: pd.Series, tendency: str = "mean") -> float:
    if tendency not in CENTRAL_TENDENCIES:
        raise ValueError(f"central tendency must be one of: {', '.join(CENTRAL_TENDENCIES)}")
    if prices.empty:
        return 0.0
    value = prices.median() if tendency == "median" else prices.mean()
    return float(value)
