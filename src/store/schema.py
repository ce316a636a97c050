"""
Trading Store Schema - Risk Control Persistence

THE FOUR TABLES THE RISK LAYER READS:
1. circuit_breaker_log - Every halt ever triggered (never deleted, audit trail)
2. trades - Opens and closes written by the trading loop
3. account_history - Balance snapshots (latest row = reference balance)
4. trading_signals - Price history used for correlation

Design Principles:
- Timestamps stored as UTC ISO-8601 TEXT with fixed microsecond precision,
  so lexical comparison in SQL is chronological comparison
- JSON for trigger snapshots (trigger_details)
- Schema evolves through numbered MIGRATIONS, each applied exactly once
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import json


class BreakerStatus(Enum):
    """Lifecycle state of a circuit breaker record"""
    ACTIVE = "active"                    # Halting trades right now
    EXPIRED = "expired"                  # Auto-resumed (or superseded)
    MANUALLY_RESET = "manually_reset"    # Operator cleared it


class TriggerType(Enum):
    """Which condition fired the breaker"""
    DAILY_LOSS = "daily_loss"
    HOURLY_LOSS = "hourly_loss"
    FOUR_HOUR_LOSS = "four_hour_loss"
    CONSECUTIVE_LOSS = "consecutive_loss"
    SINGLE_LARGE_LOSS = "single_large_loss"


class TradeType(Enum):
    """Trade row kind - closes carry pnl"""
    OPEN = "open"
    CLOSE = "close"


class PositionSide(Enum):
    """Perpetual position direction"""
    LONG = "long"
    SHORT = "short"


# =============================================================================
# TIMESTAMP HELPERS
# =============================================================================

def to_db_timestamp(value: datetime) -> str:
    """
    Normalize a datetime to the stored UTC format.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_db_timestamp(value: Any) -> datetime:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Accepts the trailing "Z" form written by older deployments.
    Raises ValueError on anything unparsable.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Invalid timestamp: {value!r}")
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def optional_timestamp(value: Any) -> Optional[datetime]:
    """Parse a nullable timestamp column, None on empty or garbage."""
    if value is None or value == "":
        return None
    try:
        return parse_db_timestamp(value)
    except ValueError:
        return None


# =============================================================================
# ROW TYPES
# =============================================================================

@dataclass
class CircuitBreakerRecord:
    """
    One row of circuit_breaker_log.

    resume_at is kept as the raw stored string: a malformed value must stay
    visible to the breaker so it can fall back conservatively instead of
    silently un-halting.
    """
    id: int
    reason: str
    triggered_at: Optional[datetime]
    resume_at_raw: str
    status: BreakerStatus
    severity_level: int = 1
    cooldown_until: Optional[datetime] = None
    trigger_type: Optional[TriggerType] = None
    trigger_details: Dict[str, Any] = field(default_factory=dict)
    reset_at: Optional[datetime] = None

    @property
    def resume_at(self) -> datetime:
        """Parsed resume time. Raises ValueError when malformed."""
        return parse_db_timestamp(self.resume_at_raw)

    @classmethod
    def from_row(cls, row: Any) -> "CircuitBreakerRecord":
        """Build from an aiosqlite.Row, tolerating legacy NULL columns."""
        data = dict(row)

        trigger_type = None
        if data.get("trigger_type"):
            try:
                trigger_type = TriggerType(data["trigger_type"])
            except ValueError:
                trigger_type = None

        details: Dict[str, Any] = {}
        if data.get("trigger_details"):
            try:
                details = json.loads(data["trigger_details"])
            except (TypeError, ValueError):
                details = {"raw": data["trigger_details"]}

        return cls(
            id=data["id"],
            reason=data.get("reason") or "",
            triggered_at=optional_timestamp(data.get("triggered_at")),
            resume_at_raw=data.get("resume_at") or "",
            status=BreakerStatus(data["status"]),
            severity_level=int(data.get("severity_level") or 1),
            cooldown_until=optional_timestamp(data.get("cooldown_until")),
            trigger_type=trigger_type,
            trigger_details=details,
            reset_at=optional_timestamp(data.get("reset_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API / CLI output"""
        return {
            "id": self.id,
            "reason": self.reason,
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
            "resume_at": self.resume_at_raw,
            "status": self.status.value,
            "severity_level": self.severity_level,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "trigger_type": self.trigger_type.value if self.trigger_type else None,
            "trigger_details": self.trigger_details,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


@dataclass
class TradeRecord:
    """One row of trades. pnl is only populated on closes."""
    symbol: str
    side: PositionSide
    type: TradeType
    timestamp: datetime
    price: float = 0.0
    quantity: float = 0.0
    leverage: float = 1.0
    pnl: Optional[float] = None
    fee: float = 0.0
    order_id: Optional[str] = None
    status: str = "filled"
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Any) -> "TradeRecord":
        data = dict(row)
        return cls(
            id=data.get("id"),
            order_id=data.get("order_id"),
            symbol=data["symbol"],
            side=PositionSide(data["side"]),
            type=TradeType(data["type"]),
            price=float(data.get("price") or 0),
            quantity=float(data.get("quantity") or 0),
            leverage=float(data.get("leverage") or 1),
            pnl=float(data["pnl"]) if data.get("pnl") is not None else None,
            fee=float(data.get("fee") or 0),
            timestamp=parse_db_timestamp(data["timestamp"]),
            status=data.get("status") or "filled",
        )


@dataclass
class AccountSnapshot:
    """One row of account_history"""
    total_value: float
    timestamp: datetime
    available_balance: Optional[float] = None
    unrealised_pnl: Optional[float] = None


@dataclass
class TradingSessionRecord:
    """Persisted trading loop progress - survives restarts"""
    id: int
    started_at: datetime
    iteration_count: int
    last_iteration_at: Optional[datetime] = None


# =============================================================================
# MIGRATIONS
# =============================================================================

@dataclass(frozen=True)
class Migration:
    """
    A numbered schema step.

    statements run in order; add_columns are (table, column, declaration)
    and are skipped when the column already exists, so databases whose
    columns were added ad hoc by older deployments heal without errors.
    rewrite_timestamps are (table, columns) whose TEXT values get parsed
    and written back through to_db_timestamp; unparsable values stay.
    """
    version: int
    name: str
    statements: Tuple[str, ...] = ()
    add_columns: Tuple[Tuple[str, str, str], ...] = ()
    rewrite_timestamps: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()


MIGRATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""


MIGRATIONS: List[Migration] = [
    # -------------------------------------------------------------------------
    # 1: Base tables as first deployed
    # -------------------------------------------------------------------------
    Migration(
        version=1,
        name="base_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS circuit_breaker_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                reason TEXT NOT NULL,
                triggered_at TEXT NOT NULL,
                resume_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active'  -- BreakerStatus value
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_circuit_breaker_status
            ON circuit_breaker_log(status, triggered_at)
            """,
            """
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id TEXT,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,               -- 'long' or 'short'
                type TEXT NOT NULL,               -- 'open' or 'close'
                price REAL,
                quantity REAL,
                leverage REAL,
                pnl REAL,                         -- NULL until close
                fee REAL,
                timestamp TEXT NOT NULL,
                status TEXT DEFAULT 'filled'
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_trades_type_timestamp
            ON trades(type, timestamp)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_trades_symbol_timestamp
            ON trades(symbol, timestamp)
            """,
            """
            CREATE TABLE IF NOT EXISTS account_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                total_value REAL NOT NULL,
                available_balance REAL,
                unrealised_pnl REAL,
                timestamp TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_account_history_timestamp
            ON account_history(timestamp)
            """,
            """
            CREATE TABLE IF NOT EXISTS trading_signals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                price REAL NOT NULL,
                ema_20 REAL,
                ema_50 REAL,
                macd REAL,
                rsi_7 REAL,
                rsi_14 REAL,
                volume REAL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_trading_signals_symbol_timestamp
            ON trading_signals(symbol, timestamp)
            """,
        ),
    ),
    # -------------------------------------------------------------------------
    # 2: Severity escalation, cooldown and trigger audit
    # -------------------------------------------------------------------------
    Migration(
        version=2,
        name="breaker_severity_and_cooldown",
        add_columns=(
            ("circuit_breaker_log", "severity_level", "INTEGER NOT NULL DEFAULT 1"),
            ("circuit_breaker_log", "cooldown_until", "TEXT"),
            ("circuit_breaker_log", "trigger_type", "TEXT"),
            ("circuit_breaker_log", "trigger_details", "TEXT"),
        ),
    ),
    # -------------------------------------------------------------------------
    # 3: Manual reset timestamp + single-active guarantee at the store level
    # -------------------------------------------------------------------------
    Migration(
        version=3,
        name="breaker_reset_at_and_single_active",
        add_columns=(
            ("circuit_breaker_log", "reset_at", "TEXT"),
        ),
        statements=(
            # Older deployments could leave several active rows behind.
            # Keep the newest, demote the rest before the index goes on.
            """
            UPDATE circuit_breaker_log SET status = 'expired'
            WHERE status = 'active'
            AND id != (SELECT MAX(id) FROM circuit_breaker_log WHERE status = 'active')
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_circuit_breaker_single_active
            ON circuit_breaker_log(status) WHERE status = 'active'
            """,
        ),
    ),
    # -------------------------------------------------------------------------
    # 4: Trading loop session persistence
    # -------------------------------------------------------------------------
    Migration(
        version=4,
        name="trading_sessions",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS trading_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT NOT NULL,
                iteration_count INTEGER NOT NULL DEFAULT 0,
                last_iteration_at TEXT
            )
            """,
        ),
    ),
    # -------------------------------------------------------------------------
    # 5: Rewrite legacy timestamps (offset-bearing or 'Z') to the UTC form
    # -------------------------------------------------------------------------
    Migration(
        version=5,
        name="normalize_timestamps_utc",
        rewrite_timestamps=(
            ("circuit_breaker_log", ("triggered_at", "resume_at", "cooldown_until", "reset_at")),
            ("trades", ("timestamp",)),
            ("account_history", ("timestamp",)),
            ("trading_signals", ("timestamp",)),
        ),
    ),
]


LATEST_SCHEMA_VERSION = max(m.version for m in MIGRATIONS)
