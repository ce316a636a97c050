# Data Module - Quality gate for live market and account data
# Nothing reaches the risk layer or the agent without passing these checks

from .quality import (
    DataQualityReport,
    check_candle_freshness,
    comprehensive_data_check,
    validate_account_data,
    validate_indicators,
    validate_market_data,
    validate_positions,
    validate_price,
)

__all__ = [
    "DataQualityReport",
    "check_candle_freshness",
    "comprehensive_data_check",
    "validate_account_data",
    "validate_indicators",
    "validate_market_data",
    "validate_positions",
    "validate_price",
]
