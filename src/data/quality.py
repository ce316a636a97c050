"""
Data Quality Gate - no trading on dirty fuel

The trading loop runs these checks on every cycle before any position is
touched. Each returns a DataQualityReport; errors make the cycle skip,
warnings are logged and passed along.

Inputs are the plain dicts the exchange and market data providers hand
back:

    market_data = {
        "BTC": {"price": 65000.0, "ema20": ..., "ema50": ..., "macd": ...,
                "rsi7": ..., "rsi14": ..., "volume": ...,
                "timeframes": {"1m": candles_df, "5m": candles_df, ...}},
    }
    account = {"total_balance": 1000.0, "available_balance": 800.0,
               "unrealised_pnl": -12.5}
    positions = [{"symbol": "BTC", "side": "long", "quantity": 0.01, ...}]

Candles are OHLCV DataFrames (timestamp, open, high, low, close, volume).
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)


# Maximum age (minutes) of the newest candle per timeframe
FRESHNESS_THRESHOLDS = {
    "1m": 5,
    "3m": 10,
    "5m": 15,
    "15m": 30,
    "30m": 60,
    "1h": 120,
}
DEFAULT_FRESHNESS_MINUTES = 30

EXPECTED_TIMEFRAMES = ("1m", "3m", "5m", "15m", "30m", "1h")
REQUIRED_INDICATORS = ("ema20", "ema50", "macd", "rsi14", "volume")
REQUIRED_ACCOUNT_FIELDS = ("total_balance", "available_balance", "unrealised_pnl")


@dataclass
class DataQualityReport:
    """Outcome of a data quality check. is_valid means no errors."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_findings(cls, errors: List[str], warnings: List[str]) -> "DataQualityReport":
        return cls(is_valid=not errors, errors=errors, warnings=warnings)

    def __str__(self) -> str:
        return (
            f"Data Quality Report ({'valid' if self.is_valid else 'INVALID'}):\n"
            f"  Errors: {len(self.errors)}\n"
            f"  Warnings: {len(self.warnings)}"
        )


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except TypeError:
        return False


# =============================================================================
# Candles
# =============================================================================

def check_candle_freshness(
    candles: Union[pd.DataFrame, Sequence[Mapping[str, Any]], None],
    timeframe: str,
    now: Optional[datetime] = None
) -> Tuple[bool, Optional[str]]:
    """
    Is the newest candle recent enough for its timeframe?

    Timestamps may be datetimes or epoch seconds; naive values are UTC.

    Returns:
        (is_fresh, reason) - reason is None when fresh
    """
    if candles is None or len(candles) == 0:
        return False, "Candle data is empty"

    df = candles if isinstance(candles, pd.DataFrame) else pd.DataFrame(list(candles))
    if "timestamp" not in df.columns:
        return False, "Candles have no timestamp column"

    raw = df["timestamp"].iloc[-1]
    if pd.isna(raw):
        return False, "Latest candle has no timestamp"

    if pd.api.types.is_number(raw):
        latest = pd.Timestamp(raw, unit="s", tz="UTC")
    else:
        latest = pd.Timestamp(raw)
        latest = latest.tz_localize("UTC") if latest.tzinfo is None else latest.tz_convert("UTC")

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    age_minutes = (pd.Timestamp(now) - latest).total_seconds() / 60
    threshold = FRESHNESS_THRESHOLDS.get(timeframe, DEFAULT_FRESHNESS_MINUTES)

    if age_minutes > threshold:
        return False, (
            f"{timeframe} candles are stale ({age_minutes:.1f} min old, "
            f"threshold {threshold} min)"
        )
    return True, None


# =============================================================================
# Prices and indicators
# =============================================================================

def validate_price(price: Any, symbol: str) -> Tuple[bool, Optional[str]]:
    """A price must be a finite number above zero."""
    if not _is_number(price):
        return False, f"{symbol} price is not a valid number: {price}"
    if price <= 0:
        return False, f"{symbol} price must be > 0: {price}"
    return True, None


def validate_indicators(indicators: Mapping[str, Any], symbol: str) -> DataQualityReport:
    errors: List[str] = []
    warnings: List[str] = []

    for name in REQUIRED_INDICATORS:
        value = indicators.get(name)
        if value is None:
            errors.append(f"{symbol} missing indicator: {name}")
        elif not _is_number(value):
            errors.append(f"{symbol} indicator {name} is not a valid number: {value}")

    for rsi in ("rsi14", "rsi7"):
        value = indicators.get(rsi)
        if _is_number(value) and not 0 <= value <= 100:
            errors.append(f"{symbol} {rsi.upper()} outside [0, 100]: {value}")

    volume = indicators.get("volume")
    if _is_number(volume):
        if volume < 0:
            errors.append(f"{symbol} volume cannot be negative: {volume}")
        elif volume == 0:
            warnings.append(f"{symbol} volume is 0, market may be illiquid")

    return DataQualityReport.from_findings(errors, warnings)


def validate_market_data(market_data: Optional[Mapping[str, Mapping[str, Any]]]) -> DataQualityReport:
    """Price and indicators for every symbol, plus timeframe coverage."""
    if not market_data:
        return DataQualityReport.from_findings(["Market data is empty"], [])

    errors: List[str] = []
    warnings: List[str] = []

    for symbol, data in market_data.items():
        ok, reason = validate_price(data.get("price"), symbol)
        if not ok:
            errors.append(reason)

        indicator_report = validate_indicators(data, symbol)
        errors.extend(indicator_report.errors)
        warnings.extend(indicator_report.warnings)

        timeframes = data.get("timeframes")
        if timeframes:
            for tf in EXPECTED_TIMEFRAMES:
                if tf not in timeframes or timeframes[tf] is None:
                    warnings.append(f"{symbol} missing {tf} timeframe data")

    return DataQualityReport.from_findings(errors, warnings)


# =============================================================================
# Account and positions
# =============================================================================

def validate_account_data(account: Optional[Mapping[str, Any]]) -> DataQualityReport:
    if not account:
        return DataQualityReport.from_findings(["Account data is empty"], [])

    errors: List[str] = []
    warnings: List[str] = []

    for name in REQUIRED_ACCOUNT_FIELDS:
        value = account.get(name)
        if value is None:
            errors.append(f"Account data missing field: {name}")
        elif not _is_number(value):
            errors.append(f"Account field {name} is not a valid number: {value}")

    total = account.get("total_balance")
    if _is_number(total):
        if total < 0:
            errors.append(f"Account total balance cannot be negative: {total}")
        elif total == 0:
            errors.append("Account total balance is 0, cannot trade")

    available = account.get("available_balance")
    if _is_number(available) and available < 0:
        warnings.append(f"Available balance is negative ({available}), margin may be insufficient")

    return DataQualityReport.from_findings(errors, warnings)


def validate_positions(positions: Any) -> List[str]:
    """Errors for malformed position entries (empty list is fine)."""
    if not isinstance(positions, (list, tuple)):
        return ["Positions data is not a list"]

    errors = []
    for position in positions:
        if not isinstance(position, Mapping):
            errors.append(f"Position entry is not a mapping: {position!r}")
            continue
        symbol = position.get("symbol")
        if not symbol:
            errors.append("Position missing symbol")
        side = position.get("side")
        if side not in ("long", "short"):
            errors.append(f"{symbol or 'unknown'} position side is invalid: {side}")
        quantity = position.get("quantity")
        if not _is_number(quantity) or quantity <= 0:
            errors.append(f"{symbol or 'unknown'} position quantity is invalid: {quantity}")
    return errors


def comprehensive_data_check(
    market_data: Optional[Mapping[str, Mapping[str, Any]]],
    account: Optional[Mapping[str, Any]],
    positions: Any
) -> DataQualityReport:
    """
    Everything the trading loop needs before it acts.

    Market data, account, positions, and at least one symbol with a
    usable price.
    """
    errors: List[str] = []
    warnings: List[str] = []

    market_report = validate_market_data(market_data)
    errors.extend(market_report.errors)
    warnings.extend(market_report.warnings)

    account_report = validate_account_data(account)
    errors.extend(account_report.errors)
    warnings.extend(account_report.warnings)

    errors.extend(validate_positions(positions))

    valid_symbols = [
        symbol for symbol, data in (market_data or {}).items()
        if _is_number(data.get("price")) and data.get("price") > 0
    ]
    if not valid_symbols:
        errors.append("No symbol has valid market data")

    report = DataQualityReport.from_findings(errors, warnings)
    if not report.is_valid:
        logger.warning(f"Data quality check failed: {'; '.join(errors)}")
    elif warnings:
        logger.info(f"Data quality warnings: {'; '.join(warnings)}")
    return report
