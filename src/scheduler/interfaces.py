"""
Trading Loop Collaborators - what the loop talks to

The loop owns the risk sequence; everything that touches the outside
world sits behind one of these:

- ExchangeClient: account, positions, order placement
- MarketDataProvider: prices, indicators and candles per symbol
- DecisionAgent: turns a DecisionContext into TradeIntents

Implementations live outside this package (exchange adapters, the LLM
agent). Tests substitute AsyncMocks.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.data.quality import DataQualityReport
from src.risk.schema import CircuitBreakerStatus
from src.store.schema import PositionSide, parse_db_timestamp


class IntentAction(Enum):
    """What the agent wants done"""
    OPEN = "open"
    CLOSE = "close"


@dataclass
class TradeIntent:
    """
    One action requested by the decision agent.

    notional is the quote value before leverage (opens only).
    """
    action: IntentAction
    symbol: str
    side: PositionSide
    notional: float = 0.0
    leverage: float = 1.0
    reason: str = ""


@dataclass
class OrderFill:
    """What the exchange reports back for a filled order"""
    price: float
    quantity: float
    order_id: Optional[str] = None
    fee: float = 0.0
    pnl: Optional[float] = None     # Realized, closes only


@dataclass
class OpenPosition:
    """An exchange position as the loop sees it"""
    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    current_price: float
    leverage: float = 1.0
    opened_at: Optional[datetime] = None
    unrealised_pnl: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OpenPosition":
        opened_at = data.get("opened_at")
        return cls(
            symbol=data["symbol"],
            side=PositionSide(data["side"]),
            quantity=float(data["quantity"]),
            entry_price=float(data.get("entry_price") or 0),
            current_price=float(data.get("current_price") or 0),
            leverage=float(data.get("leverage") or 1),
            opened_at=parse_db_timestamp(opened_at) if opened_at else None,
            unrealised_pnl=float(data.get("unrealised_pnl") or 0),
        )

    @property
    def price_change_percent(self) -> float:
        """Unleveraged move in our favour, in percent"""
        if self.entry_price <= 0:
            return 0.0
        direction = 1 if self.side == PositionSide.LONG else -1
        return (self.current_price - self.entry_price) / self.entry_price * 100 * direction

    @property
    def pnl_percent(self) -> float:
        """Leveraged PnL percent, the figure the dynamic stop-loss is set on"""
        return self.price_change_percent * self.leverage

    def holding_hours(self, now: datetime) -> float:
        if self.opened_at is None:
            return 0.0
        return (now - self.opened_at).total_seconds() / 3600


@dataclass
class DecisionContext:
    """Everything the agent sees for one cycle"""
    iteration: int
    minutes_elapsed: int
    timestamp: datetime
    market_data: Dict[str, Dict[str, Any]]
    account: Dict[str, Any]
    positions: List[OpenPosition]
    circuit_breaker: CircuitBreakerStatus
    data_quality: DataQualityReport
    forced_closes: List[str] = field(default_factory=list)


class ExchangeClient(ABC):
    """Perpetual futures account access"""

    @abstractmethod
    async def get_account(self) -> Dict[str, Any]:
        """
        Current account state.

        Returns:
            {"total_balance": float, "available_balance": float,
             "unrealised_pnl": float}
        """
        pass

    @abstractmethod
    async def get_positions(self) -> List[Dict[str, Any]]:
        """
        Open positions.

        Returns:
            List of {"symbol", "side", "quantity", "entry_price",
            "current_price", "leverage", "opened_at", "unrealised_pnl"}
        """
        pass

    @abstractmethod
    async def close_position(self, position: OpenPosition, reason: str) -> OrderFill:
        """Market-close the whole position (reduce only)."""
        pass

    @abstractmethod
    async def open_position(
        self,
        symbol: str,
        side: PositionSide,
        notional: float,
        leverage: float
    ) -> OrderFill:
        """Open a new position worth `notional` before leverage."""
        pass


class MarketDataProvider(ABC):

    @abstractmethod
    async def collect(self, symbols: List[str]) -> Dict[str, Dict[str, Any]]:
        """
        Latest market snapshot per symbol.

        Returns:
            {symbol: {"price", "ema20", "ema50", "macd", "rsi7", "rsi14",
                      "volume", "timeframes": {tf: candles_df}}}
        """
        pass


class DecisionAgent(ABC):

    @abstractmethod
    async def decide(self, context: DecisionContext) -> List[TradeIntent]:
        """Intents for this cycle. An empty list means hold."""
        pass
