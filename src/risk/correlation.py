"""
Return correlation between two price series.

Pure numpy - the store lookups live in AnomalyDetector. Insufficient data
and flat series both yield 0.0 (treated as uncorrelated, not an error).
"""

from typing import Sequence

import numpy as np


def simple_returns(prices: Sequence[float]) -> np.ndarray:
    """Period-over-period returns (p[i] - p[i-1]) / p[i-1], oldest first."""
    series = np.asarray(prices, dtype=float)
    if series.size < 2:
        return np.empty(0)
    previous = series[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.diff(series) / previous
    # A zero price can't produce a meaningful return
    return np.where(np.isfinite(returns), returns, 0.0)


def pearson_correlation(
    prices_a: Sequence[float],
    prices_b: Sequence[float],
    min_points: int = 30,
    min_returns: int = 20
) -> float:
    """
    Pearson correlation of simple returns over the first n aligned returns.

    Args:
        prices_a: Chronological prices (oldest first) for the first symbol
        prices_b: Chronological prices (oldest first) for the second symbol
        min_points: Raw prices required per series
        min_returns: Aligned returns required

    Returns:
        Coefficient in [-1, 1]; 0.0 with too little data or zero variance.
    """
    if len(prices_a) < min_points or len(prices_b) < min_points:
        return 0.0

    returns_a = simple_returns(prices_a)
    returns_b = simple_returns(prices_b)

    n = min(returns_a.size, returns_b.size)
    if n < min_returns:
        return 0.0

    dev_a = returns_a[:n] - returns_a[:n].mean()
    dev_b = returns_b[:n] - returns_b[:n].mean()

    denominator = np.sqrt(np.sum(dev_a * dev_a) * np.sum(dev_b * dev_b))
    if denominator == 0:
        return 0.0

    return float(np.sum(dev_a * dev_b) / denominator)
