"""
Trading Loop - the risk sequence around every decision cycle

THE SEQUENCE (do not change order):
1. Persist the iteration
2. Circuit breaker - HALTED skips the cycle, so does a failing check
3. Market data - nothing usable skips the cycle
4. Account snapshot - balance thresholds close everything and stop
5. Positions
6. Data quality gate - any error skips the cycle
7. Forced-close sweep - max holding time and dynamic stop-loss
8. Agent decisions - every open goes through the RiskGate first

A failing stage abandons the cycle; the next scheduled cycle starts
fresh.

Usage:
    loop = TradingLoop(store, exchange, market, agent, breaker, gate, config)
    await loop.run()              # until stop() or an account threshold

    result = await loop.manual_trigger()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from src.data.quality import comprehensive_data_check
from src.risk.circuit_breaker import CircuitBreaker
from src.risk.gate import RiskGate
from src.risk.schema import ExistingPosition, RiskCheckRequest
from src.risk.stop_loss import get_dynamic_stop_loss, should_force_close
from src.store.database import TradingStore
from src.store.schema import AccountSnapshot, PositionSide, TradeRecord, TradeType

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
from .session import TradingLoopConfig, TradingSession

logger = logging.getLogger(__name__)


class CycleStatus(Enum):
    """How a cycle ended"""
    COMPLETED = "completed"
    HALTED = "halted"          # Circuit breaker active
    SKIPPED = "skipped"        # A stage failed or data was unusable
    STOPPED = "stopped"        # Account threshold hit, loop stopped


@dataclass
class CycleResult:
    """Outcome of one run_cycle()"""
    iteration: int
    timestamp: datetime
    status: CycleStatus
    reason: Optional[str] = None
    forced_closes: List[str] = field(default_factory=list)
    opened: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "reason": self.reason,
            "forced_closes": self.forced_closes,
            "opened": self.opened,
            "closed": self.closed,
            "blocked": self.blocked,
            "warnings": self.warnings,
        }


class TradingLoop:
    """Runs decision cycles on a fixed interval."""

    def __init__(
        self,
        store: TradingStore,
        exchange: ExchangeClient,
        market_data: MarketDataProvider,
        agent: DecisionAgent,
        circuit_breaker: CircuitBreaker,
        risk_gate: RiskGate,
        config: Optional[TradingLoopConfig] = None
    ):
        self.store = store
        self.exchange = exchange
        self.market_data = market_data
        self.agent = agent
        self.circuit_breaker = circuit_breaker
        self.risk_gate = risk_gate
        self.config = config or TradingLoopConfig()

        self.session: Optional[TradingSession] = None
        self.next_execution_time: Optional[datetime] = None
        self._running = False
        self._cycle_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def run(self) -> None:
        """Run a cycle now, then one every interval_minutes until stopped."""
        interval = timedelta(minutes=self.config.interval_minutes)
        self._running = True
        self._stop_event = asyncio.Event()
        logger.info(
            f"Trading loop starting: every {self.config.interval_minutes:g} min, "
            f"symbols {', '.join(self.config.symbols)}"
        )

        while self._running:
            result = await self.run_cycle()
            if result.status == CycleStatus.STOPPED or not self._running:
                break

            self.next_execution_time = datetime.now(timezone.utc) + interval
            logger.debug(f"Next cycle at {self.next_execution_time.isoformat()}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval.total_seconds())
            except asyncio.TimeoutError:
                pass

        self._running = False
        self._stop_event = None
        logger.info("Trading loop stopped")

    def stop(self) -> None:
        """Stop after the current cycle; a pending wait ends immediately."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def manual_trigger(self) -> CycleResult:
        """Run one cycle outside the schedule."""
        logger.info("Manual trading cycle requested")
        result = await self.run_cycle()
        self.next_execution_time = (
            datetime.now(timezone.utc) + timedelta(minutes=self.config.interval_minutes)
        )
        return result

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """One full pass through the sequence. Never raises."""
        async with self._cycle_lock:
            now = now or datetime.now(timezone.utc)
            try:
                return await self._run_cycle(now)
            except Exception as e:
                logger.exception(f"Trading cycle failed: {e}")
                iteration = self.session.iteration_count if self.session else 0
                return CycleResult(iteration, now, CycleStatus.SKIPPED, reason=f"Unexpected error: {e}")

    # =========================================================================
    # The cycle
    # =========================================================================

    async def _run_cycle(self, now: datetime) -> CycleResult:
        # 1. Iteration
        try:
            if self.session is None:
                self.session = await TradingSession.load(self.store, now)
            iteration = await self.session.begin_iteration(self.store, now)
        except Exception as e:
            logger.error(f"Failed to persist trading session: {e}")
            return CycleResult(0, now, CycleStatus.SKIPPED, reason=f"Session error: {e}")

        logger.info("=" * 60)
        logger.info(
            f"Trading cycle #{iteration} "
            f"({self.session.minutes_elapsed(now)} min since session start)"
        )
        logger.info("=" * 60)

        def skipped(reason: str) -> CycleResult:
            logger.warning(f"Cycle #{iteration} skipped: {reason}")
            return CycleResult(iteration, now, CycleStatus.SKIPPED, reason=reason)

        # 2. Circuit breaker
        try:
            breaker = await self.circuit_breaker.check(now)
        except Exception as e:
            logger.error(f"Circuit breaker check raised: {e}")
            return skipped("Circuit breaker check failed, skipping for safety")

        if breaker.should_halt:
            remaining = breaker.minutes_remaining(now)
            logger.warning(
                f"Circuit breaker active: {breaker.reason}"
                + (f" (resumes in {remaining} min)" if remaining is not None else "")
            )
            return CycleResult(iteration, now, CycleStatus.HALTED, reason=breaker.reason)

        # 3. Market data
        try:
            market_data = await self.market_data.collect(self.config.symbols)
        except Exception as e:
            logger.error(f"Market data collection failed: {e}")
            return skipped(f"Market data error: {e}")

        usable = {
            symbol: data for symbol, data in (market_data or {}).items()
            if data and isinstance(data.get("price"), (int, float)) and data["price"] > 0
        }
        if not usable:
            return skipped("No usable market data")
        await self._record_signals(usable, now)

        # 4. Account
        try:
            account = await self.exchange.get_account()
        except Exception as e:
            logger.error(f"Account fetch failed: {e}")
            return skipped(f"Account error: {e}")

        total_balance = (account or {}).get("total_balance")
        if not total_balance:
            return skipped("Account data missing or zero balance")

        try:
            await self.store.record_account_snapshot(AccountSnapshot(
                total_value=float(total_balance),
                timestamp=now,
                available_balance=account.get("available_balance"),
                unrealised_pnl=account.get("unrealised_pnl"),
            ))
        except Exception as e:
            logger.error(f"Failed to record account snapshot: {e}")
            return skipped(f"Store error: {e}")

        threshold_reason = self._account_threshold_breached(float(total_balance))
        if threshold_reason:
            return await self._exit_all(iteration, now, threshold_reason)

        # 5. Positions
        try:
            raw_positions = await self.exchange.get_positions() or []
        except Exception as e:
            logger.error(f"Position fetch failed: {e}")
            return skipped(f"Position error: {e}")

        # 6. Data quality
        report = comprehensive_data_check(market_data, account, raw_positions)
        if not report.is_valid:
            for error in report.errors:
                logger.error(f"  - {error}")
            return skipped(f"Data quality check failed ({len(report.errors)} errors)")

        positions = [OpenPosition.from_dict(p) for p in raw_positions]
        result = CycleResult(iteration, now, CycleStatus.COMPLETED, warnings=list(report.warnings))

        # 7. Forced-close sweep
        positions = await self._forced_close_sweep(positions, now, result)

        # 8. Agent
        context = DecisionContext(
            iteration=iteration,
            minutes_elapsed=self.session.minutes_elapsed(now),
            timestamp=now,
            market_data=usable,
            account=account,
            positions=list(positions),
            circuit_breaker=breaker,
            data_quality=report,
            forced_closes=list(result.forced_closes),
        )
        try:
            intents = await self.agent.decide(context) or []
        except Exception as e:
            logger.error(f"Decision agent failed: {e}")
            result.status = CycleStatus.SKIPPED
            result.reason = f"Agent error: {e}"
            return result

        for intent in intents:
            await self._execute_intent(intent, positions, now, result)

        logger.info(
            f"Cycle #{iteration} complete: {len(result.opened)} opened, "
            f"{len(result.closed)} closed, {len(result.forced_closes)} forced, "
            f"{len(result.blocked)} blocked"
        )
        return result

    # =========================================================================
    # Stage helpers
    # =========================================================================

    async def _record_signals(self, market_data: Dict[str, Dict[str, Any]], now: datetime) -> None:
        """Price history for the correlation check"""
        for symbol, data in market_data.items():
            try:
                await self.store.record_signal(symbol, float(data["price"]), now, data)
            except Exception as e:
                logger.error(f"Failed to record signal for {symbol}: {e}")

    def _account_threshold_breached(self, total_balance: float) -> Optional[str]:
        stop_loss = self.config.account_stop_loss_usdt
        take_profit = self.config.account_take_profit_usdt

        if stop_loss is not None and total_balance <= stop_loss:
            logger.error(f"Account stop-loss hit: balance {total_balance:.2f} <= {stop_loss:.2f} USDT")
            return f"Account balance {total_balance:.2f} USDT hit stop-loss line {stop_loss:.2f}"
        if take_profit is not None and total_balance >= take_profit:
            logger.warning(f"Account take-profit hit: balance {total_balance:.2f} >= {take_profit:.2f} USDT")
            return f"Account balance {total_balance:.2f} USDT hit take-profit line {take_profit:.2f}"
        return None

    async def _exit_all(self, iteration: int, now: datetime, reason: str) -> CycleResult:
        """Close every position and stop the loop"""
        result = CycleResult(iteration, now, CycleStatus.STOPPED, reason=reason)
        try:
            raw_positions = await self.exchange.get_positions() or []
        except Exception as e:
            logger.error(f"Position fetch failed while closing all: {e}")
            raw_positions = []

        for raw in raw_positions:
            try:
                position = OpenPosition.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Unreadable position {raw!r}: {e}")
                continue
            if await self._close(position, now, reason):
                result.closed.append(position.symbol)

        self.stop()
        logger.error(f"Trading loop stopping: {reason}")
        return result

    async def _forced_close_sweep(
        self,
        positions: List[OpenPosition],
        now: datetime,
        result: CycleResult
    ) -> List[OpenPosition]:
        """Close what the safety net says must go. Returns what's left open."""
        remaining = []
        for position in positions:
            holding_hours = position.holding_hours(now)
            pnl_percent = position.pnl_percent
            stop_loss = get_dynamic_stop_loss(position.leverage)

            logger.info(
                f"{position.symbol} {position.side.value}: pnl {pnl_percent:.2f}% "
                f"(stop {stop_loss:g}% at {position.leverage:g}x), held {holding_hours:.1f}h"
            )

            reason = None
            if holding_hours >= self.config.max_holding_hours:
                reason = (
                    f"Held {holding_hours:.1f}h, over the "
                    f"{self.config.max_holding_hours:g}h limit"
                )
            elif should_force_close(pnl_percent, position.leverage):
                reason = (
                    f"Dynamic stop-loss: {pnl_percent:.2f}% <= {stop_loss:g}% "
                    f"at {position.leverage:g}x leverage"
                )

            if reason is None:
                remaining.append(position)
                continue

            logger.warning(f"FORCED CLOSE {position.symbol} {position.side.value}: {reason}")
            if await self._close(position, now, reason):
                result.forced_closes.append(position.symbol)
            else:
                remaining.append(position)

        return remaining

    async def _execute_intent(
        self,
        intent: TradeIntent,
        positions: List[OpenPosition],
        now: datetime,
        result: CycleResult
    ) -> None:
        if intent.action == IntentAction.CLOSE:
            position = next(
                (p for p in positions if p.symbol == intent.symbol and p.side == intent.side),
                None
            )
            if position is None:
                logger.warning(f"Agent asked to close {intent.symbol} {intent.side.value}, no such position")
                return
            if await self._close(position, now, intent.reason or "Agent decision"):
                result.closed.append(intent.symbol)
                positions.remove(position)
            return

        request = RiskCheckRequest(
            symbol=intent.symbol,
            side=intent.side,
            notional=intent.notional,
            leverage=intent.leverage,
            existing_positions=[ExistingPosition(p.symbol, p.side) for p in positions],
        )
        verdict = await self.risk_gate.comprehensive_risk_check(request, now)
        result.warnings.extend(verdict.warnings)
        if not verdict.approved:
            result.blocked.append(intent.symbol)
            return

        try:
            fill = await self.exchange.open_position(
                intent.symbol, intent.side, intent.notional, intent.leverage
            )
        except Exception as e:
            logger.error(f"Failed to open {intent.symbol} {intent.side.value}: {e}")
            return

        try:
            await self.store.record_trade(TradeRecord(
                symbol=intent.symbol,
                side=intent.side,
                type=TradeType.OPEN,
                timestamp=now,
                price=fill.price,
                quantity=fill.quantity,
                leverage=intent.leverage,
                fee=fill.fee,
                order_id=fill.order_id,
            ))
        except Exception as e:
            logger.error(f"Opened {intent.symbol} but failed to record the trade: {e}")

        logger.info(
            f"Opened {intent.symbol} {intent.side.value} {fill.quantity} @ {fill.price} "
            f"({intent.leverage:g}x)"
        )
        result.opened.append(intent.symbol)
        # Later intents this cycle are gated against it
        positions.append(OpenPosition(
            symbol=intent.symbol,
            side=intent.side,
            quantity=fill.quantity,
            entry_price=fill.price,
            current_price=fill.price,
            leverage=intent.leverage,
            opened_at=now,
        ))

    async def _close(self, position: OpenPosition, now: datetime, reason: str) -> bool:
        """Close on the exchange and record the close trade with its pnl"""
        if not position.quantity or position.quantity <= 0:
            logger.error(f"Invalid quantity for {position.symbol}: {position.quantity}")
            return False

        try:
            fill = await self.exchange.close_position(position, reason)
        except Exception as e:
            logger.error(f"Failed to close {position.symbol} {position.side.value}: {e}")
            return False

        pnl = fill.pnl if fill.pnl is not None else self._realized_pnl(position, fill)
        try:
            await self.store.record_trade(TradeRecord(
                symbol=position.symbol,
                side=position.side,
                type=TradeType.CLOSE,
                timestamp=now,
                price=fill.price,
                quantity=fill.quantity,
                leverage=position.leverage,
                pnl=pnl,
                fee=fill.fee,
                order_id=fill.order_id,
            ))
        except Exception as e:
            logger.error(f"Closed {position.symbol} but failed to record the trade: {e}")

        logger.info(f"Closed {position.symbol} {position.side.value} pnl {pnl:.2f}: {reason}")
        return True

    @staticmethod
    def _realized_pnl(position: OpenPosition, fill: OrderFill) -> float:
        exit_price = fill.price or position.current_price
        direction = 1 if position.side == PositionSide.LONG else -1
        return (exit_price - position.entry_price) * fill.quantity * direction - fill.fee
