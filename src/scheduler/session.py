"""
Trading loop configuration and persisted session progress.

The session (start time, iteration count) lives in the trading_sessions
table so a restarted process picks up where it left off.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.risk.config import RiskConfigError, load_config_section
from src.store.database import TradingStore

logger = logging.getLogger(__name__)


@dataclass
class TradingLoopConfig:
    """
    The 'trading' section of config.yaml.

    Account thresholds are absolute USDT balances; None disables them.
    """
    interval_minutes: float = 5.0
    symbols: List[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL"])
    account_stop_loss_usdt: Optional[float] = None
    account_take_profit_usdt: Optional[float] = None
    max_holding_hours: float = 36.0

    def __post_init__(self):
        errors = []
        if self.interval_minutes <= 0:
            errors.append(f"interval_minutes must be > 0, got {self.interval_minutes}")
        if not self.symbols:
            errors.append("symbols must not be empty")
        if self.max_holding_hours <= 0:
            errors.append(f"max_holding_hours must be > 0, got {self.max_holding_hours}")
        if self.account_stop_loss_usdt is not None and self.account_stop_loss_usdt < 0:
            errors.append(f"account_stop_loss_usdt must be >= 0, got {self.account_stop_loss_usdt}")
        if (self.account_stop_loss_usdt is not None
                and self.account_take_profit_usdt is not None
                and self.account_take_profit_usdt <= self.account_stop_loss_usdt):
            errors.append(
                f"account_take_profit_usdt ({self.account_take_profit_usdt}) must be above "
                f"account_stop_loss_usdt ({self.account_stop_loss_usdt})"
            )
        if errors:
            raise RiskConfigError(f"Invalid trading configuration: {'; '.join(errors)}")

    @classmethod
    def load_from_yaml(cls, path: str = "config.yaml") -> "TradingLoopConfig":
        section = load_config_section(path, "trading")
        unknown = sorted(set(section) - {f.name for f in fields(cls)})
        if unknown:
            raise RiskConfigError(f"Unknown trading keys in {path}: {', '.join(unknown)}")
        try:
            return cls(**section)
        except TypeError as e:
            raise RiskConfigError(f"Invalid trading structure: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TradingSession:
    """Run-level progress of the trading loop"""
    id: int
    started_at: datetime
    iteration_count: int = 0
    last_iteration_at: Optional[datetime] = None

    @classmethod
    async def load(cls, store: TradingStore, now: datetime) -> "TradingSession":
        """Resume the newest session, or start one at `now`"""
        record = await store.load_or_create_session(now)
        session = cls(
            id=record.id,
            started_at=record.started_at,
            iteration_count=record.iteration_count,
            last_iteration_at=record.last_iteration_at,
        )
        if session.iteration_count:
            logger.info(
                f"Resumed trading session #{session.id} at iteration "
                f"{session.iteration_count} (started {session.started_at.isoformat()})"
            )
        return session

    def minutes_elapsed(self, now: datetime) -> int:
        return int((now - self.started_at).total_seconds() // 60)

    async def begin_iteration(self, store: TradingStore, now: datetime) -> int:
        """Count a new iteration and persist it. Returns the iteration number."""
        self.iteration_count += 1
        self.last_iteration_at = now
        await store.save_session_progress(self.id, self.iteration_count, now)
        return self.iteration_count
