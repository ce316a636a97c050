"""
Trading Store - persistence for trades, balances, signals and breakers

Usage:
    from src.store import TradingStore

    store = TradingStore("data/perpguard.db")
    await store.initialize()
"""

from .schema import (
    AccountSnapshot,
    BreakerStatus,
    CircuitBreakerRecord,
    LATEST_SCHEMA_VERSION,
    MIGRATIONS,
    Migration,
    PositionSide,
    TradeRecord,
    TradeType,
    TradingSessionRecord,
    TriggerType,
    parse_db_timestamp,
    to_db_timestamp,
)
from .database import StoreError, TradingStore

__all__ = [
    # Enums
    "BreakerStatus",
    "TriggerType",
    "TradeType",
    "PositionSide",

    # Rows
    "CircuitBreakerRecord",
    "TradeRecord",
    "AccountSnapshot",
    "TradingSessionRecord",

    # Migrations
    "Migration",
    "MIGRATIONS",
    "LATEST_SCHEMA_VERSION",

    # Store
    "TradingStore",
    "StoreError",

    # Helpers
    "to_db_timestamp",
    "parse_db_timestamp",
]
