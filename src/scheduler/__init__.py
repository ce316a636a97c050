"""
Scheduler - the trading loop and its collaborators

Usage:
    from src.scheduler import TradingLoop, TradingLoopConfig

    loop = TradingLoop(store, exchange, market, agent, breaker, gate,
                       TradingLoopConfig.load_from_yaml("config.yaml"))
    await loop.run()
"""

from .interfaces import (
    DecisionAgent,
    DecisionContext,
    ExchangeClient,
    IntentAction,
    MarketDataProvider,
    OpenPosition,
    OrderFill,
    TradeIntent,
)
from .loop import CycleResult, CycleStatus, TradingLoop
from .session import TradingLoopConfig, TradingSession

__all__ = [
    "CycleResult",
    "CycleStatus",
    "DecisionAgent",
    "DecisionContext",
    "ExchangeClient",
    "IntentAction",
    "MarketDataProvider",
    "OpenPosition",
    "OrderFill",
    "TradeIntent",
    "TradingLoop",
    "TradingLoopConfig",
    "TradingSession",
]
