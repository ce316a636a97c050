"""
Anomaly Detectors - three independent read-only checks

1. Position size - is this single position too big for the account?
2. Frequency - are we opening the same symbol over and over?
3. Correlation - does this add same-direction exposure to something
   that moves in lockstep with what we already hold?

Every detector fails OPEN: a store error is logged and reported as
"not anomalous". These feed warnings and position-level blocks; the
circuit breaker is the layer that halts trading outright.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from src.store.database import TradingStore
from src.store.schema import PositionSide

from .config import RiskControlConfig
from .correlation import pearson_correlation
from .schema import AnomalyCheck, AnomalySeverity, ExistingPosition

logger = logging.getLogger(__name__)


class AnomalyDetector:
    """
    Runs the position-size, frequency and correlation checks against the
    trading store.

    Usage:
        detector = AnomalyDetector(store, config)
        check = await detector.detect_anomalous_position("BTC", 600.0, 1)
        if check.is_anomalous and check.severity == AnomalySeverity.HIGH:
            ...
    """

    def __init__(self, store: TradingStore, config: Optional[RiskControlConfig] = None):
        self.store = store
        self.config = config or RiskControlConfig()

    async def _reference_balance(self) -> float:
        balance = await self.store.get_latest_balance()
        if balance is None or balance <= 0:
            return self.config.default_balance
        return balance

    # =========================================================================
    # Position size
    # =========================================================================

    async def detect_anomalous_position(
        self,
        symbol: str,
        notional: float,
        leverage: float
    ) -> AnomalyCheck:
        """
        Check a proposed position against the account balance.

        Rules, first match wins:
        1. position > 50% of balance -> HIGH
        2. position% x leverage > 200% -> HIGH
        3. leverage >= 15 and position > 30% -> MEDIUM
        """
        try:
            balance = await self._reference_balance()
            position_percent = notional / balance * 100
            effective_exposure = position_percent * leverage

            logger.debug(
                f"{symbol} position check: {position_percent:.1f}% of {balance:.2f}, "
                f"effective exposure {effective_exposure:.1f}% at {leverage}x"
            )

            if position_percent > self.config.max_position_pct:
                return AnomalyCheck(
                    is_anomalous=True,
                    severity=AnomalySeverity.HIGH,
                    reason=(
                        f"Single position too large: {position_percent:.1f}% of account "
                        f"exceeds {self.config.max_position_pct:g}%"
                    ),
                )

            if effective_exposure > self.config.max_effective_exposure_pct:
                return AnomalyCheck(
                    is_anomalous=True,
                    severity=AnomalySeverity.HIGH,
                    reason=(
                        f"Effective exposure too large: {effective_exposure:.1f}% "
                        f"(position {position_percent:.1f}% x {leverage:g}x leverage) "
                        f"exceeds {self.config.max_effective_exposure_pct:g}%"
                    ),
                )

            if (leverage >= self.config.high_leverage_threshold
                    and position_percent > self.config.high_leverage_position_pct):
                return AnomalyCheck(
                    is_anomalous=True,
                    severity=AnomalySeverity.MEDIUM,
                    reason=(
                        f"High leverage {leverage:g}x combined with large position "
                        f"{position_percent:.1f}% is too risky"
                    ),
                )

            return AnomalyCheck.clear()
        except Exception as e:
            logger.error(f"Position anomaly check failed for {symbol}: {e}")
            return AnomalyCheck.clear()

    # =========================================================================
    # Frequency
    # =========================================================================

    async def detect_frequent_trading(
        self,
        symbol: str,
        now: Optional[datetime] = None
    ) -> AnomalyCheck:
        """Flag a symbol opened max_opens_per_hour times in the trailing hour."""
        try:
            now = now or datetime.now(timezone.utc)
            open_count = await self.store.count_opens_since(symbol, now - timedelta(hours=1))

            if open_count >= self.config.max_opens_per_hour:
                return AnomalyCheck(
                    is_anomalous=True,
                    severity=AnomalySeverity.MEDIUM,
                    reason=f"{symbol} opened {open_count} times in the last hour, trading too frequently",
                )

            return AnomalyCheck.clear()
        except Exception as e:
            logger.error(f"Frequency anomaly check failed for {symbol}: {e}")
            return AnomalyCheck.clear()

    # =========================================================================
    # Correlation
    # =========================================================================

    async def calculate_correlation(self, symbol_a: str, symbol_b: str) -> float:
        """
        Pearson correlation of recent returns between two symbols.

        0.0 when either symbol has too little signal history, or on error.
        """
        try:
            lookback = self.config.correlation_lookback
            # Store hands prices back newest first; returns need oldest first
            prices_a = list(reversed(await self.store.get_recent_prices(symbol_a, lookback)))
            prices_b = list(reversed(await self.store.get_recent_prices(symbol_b, lookback)))

            if (len(prices_a) < self.config.correlation_min_points
                    or len(prices_b) < self.config.correlation_min_points):
                logger.debug(
                    f"Insufficient data for {symbol_a}/{symbol_b} correlation: "
                    f"{len(prices_a)}/{len(prices_b)} points"
                )
                return 0.0

            return pearson_correlation(
                prices_a,
                prices_b,
                min_points=self.config.correlation_min_points,
                min_returns=self.config.correlation_min_returns,
            )
        except Exception as e:
            logger.error(f"Correlation calculation failed for {symbol_a}/{symbol_b}: {e}")
            return 0.0

    async def detect_correlation_risk(
        self,
        symbol: str,
        side: PositionSide,
        existing_positions: Sequence[ExistingPosition]
    ) -> AnomalyCheck:
        """Flag same-direction exposure to a highly correlated open position."""
        try:
            if not existing_positions:
                return AnomalyCheck.clear()

            for position in existing_positions:
                correlation = await self.calculate_correlation(symbol, position.symbol)

                if abs(correlation) > self.config.correlation_threshold and position.side == side:
                    return AnomalyCheck(
                        is_anomalous=True,
                        severity=AnomalySeverity.MEDIUM,
                        reason=(
                            f"{symbol} is highly correlated with {position.symbol} "
                            f"({correlation * 100:.0f}%), same-direction exposure too risky"
                        ),
                    )

            return AnomalyCheck.clear()
        except Exception as e:
            logger.error(f"Correlation risk check failed for {symbol}: {e}")
            return AnomalyCheck.clear()

    async def detect_all(
        self,
        symbol: str,
        side: PositionSide,
        notional: float,
        leverage: float,
        existing_positions: Sequence[ExistingPosition],
        now: Optional[datetime] = None
    ) -> List[AnomalyCheck]:
        """Position, frequency and correlation checks, in that order."""
        return [
            await self.detect_anomalous_position(symbol, notional, leverage),
            await self.detect_frequent_trading(symbol, now),
            await self.detect_correlation_risk(symbol, side, existing_positions),
        ]
