"""
Circuit Breaker - account-level trading halt

Answers one question before every decision cycle: may we trade right now?

Lifecycle of a record:
    (none) -> ACTIVE -> EXPIRED         resume time passed (or superseded)
                     -> MANUALLY_RESET  operator cleared it

Each check, in order:
1. Active record still running -> halted
2. Cooldown after a recent halt -> thresholds x 0.5
3. Severity from triggers in the last 24h -> longer halts
4. Grace after a manual reset or a fresh auto-resume -> allowed
5. Triggers, first breach wins:
   daily -> 1h window -> 4h window -> consecutive losses -> single loss

The check never raises. Internal failures are logged and answered
according to config.fail_open.
"""

import aiosqlite
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from src.store.database import TradingStore
from src.store.schema import CircuitBreakerRecord, TriggerType

from .config import RiskControlConfig
from .schema import CircuitBreakerStatus

logger = logging.getLogger(__name__)


# Fallback halt when an active record's resume_at cannot be parsed
MALFORMED_RESUME_FALLBACK = timedelta(hours=2)


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CircuitBreaker:
    """
    Decides whether trading is halted and records new halts.

    Usage:
        breaker = CircuitBreaker(store, config)
        status = await breaker.check()
        if status.should_halt:
            logger.warning(f"Halted until {status.resume_time}: {status.reason}")
            return

        # Operator override
        await breaker.reset()
    """

    def __init__(self, store: TradingStore, config: Optional[RiskControlConfig] = None):
        self.store = store
        self.config = config or RiskControlConfig()

    # =========================================================================
    # Check
    # =========================================================================

    async def check(self, now: Optional[datetime] = None) -> CircuitBreakerStatus:
        """
        Evaluate the breaker at `now` (default: current UTC time).

        May demote an elapsed active record to expired, and may write a new
        active record when a trigger fires.
        """
        now = _as_utc(now)
        try:
            return await self._check(now)
        except Exception as e:
            logger.exception(f"Circuit breaker check failed: {e}")
            if self.config.fail_open:
                return CircuitBreakerStatus(should_halt=False)
            return CircuitBreakerStatus(
                should_halt=True,
                reason=f"Circuit breaker check failed, halting until it recovers: {e}",
            )

    async def _check(self, now: datetime) -> CircuitBreakerStatus:
        # 1. Active record
        active = await self.store.get_active_breaker()
        if active is not None:
            status = await self._evaluate_active(active, now)
            if status is not None:
                return status

        # 2. Cooldown
        cooldown_until, cooldown_severity = await self._current_cooldown(now)
        in_cooldown = cooldown_until is not None
        multiplier = self.config.cooldown_threshold_multiplier if in_cooldown else 1.0

        # 3. Severity
        severity = max(await self._current_severity(now), cooldown_severity)

        allowed = CircuitBreakerStatus(
            should_halt=False,
            severity_level=severity,
            is_in_cooldown=in_cooldown,
            cooldown_until=cooldown_until,
        )

        # 4. Grace periods
        if await self._in_grace_period(now):
            return allowed

        # 5. Triggers
        balance = await self.store.get_latest_balance()
        if balance is None or balance <= 0:
            balance = self.config.default_balance

        breach = await self._find_breach(now, balance, multiplier, in_cooldown)
        if breach is None:
            logger.debug(
                f"Circuit breaker clear (severity {severity}, "
                f"cooldown {'on' if in_cooldown else 'off'}, balance {balance:.2f})"
            )
            return allowed

        trigger_type, reason, base_hours, details = breach
        return await self._trip(now, trigger_type, reason, base_hours, severity, details)

    async def _evaluate_active(
        self,
        active: CircuitBreakerRecord,
        now: datetime
    ) -> Optional[CircuitBreakerStatus]:
        """Halted status while the record runs; None once it has expired."""
        try:
            resume_at = active.resume_at
        except ValueError:
            # Stay halted rather than trade on a record we can't read
            logger.error(
                f"Circuit breaker #{active.id} has malformed resume_at "
                f"{active.resume_at_raw!r}, staying halted for "
                f"{MALFORMED_RESUME_FALLBACK}"
            )
            return CircuitBreakerStatus(
                should_halt=True,
                reason=active.reason,
                resume_time=now + MALFORMED_RESUME_FALLBACK,
                severity_level=active.severity_level,
                cooldown_until=active.cooldown_until,
                trigger_type=active.trigger_type,
            )

        if now < resume_at:
            status = CircuitBreakerStatus(
                should_halt=True,
                reason=active.reason,
                resume_time=resume_at,
                severity_level=active.severity_level,
                cooldown_until=active.cooldown_until,
                trigger_type=active.trigger_type,
            )
            logger.info(
                f"Circuit breaker active: {active.reason} "
                f"({status.minutes_remaining(now)} min remaining)"
            )
            return status

        expired = await self.store.expire_active_breakers()
        logger.info(
            f"Circuit breaker #{active.id} auto-resumed at {now.isoformat()} "
            f"({expired} record(s) expired)"
        )
        return None

    async def _current_cooldown(self, now: datetime) -> Tuple[Optional[datetime], int]:
        """(cooldown_until, severity) of a running cooldown, (None, 1) otherwise"""
        record = await self.store.get_latest_cooldown_record()
        if record is None or record.cooldown_until is None:
            return None, 1
        if now >= record.cooldown_until:
            return None, 1
        logger.debug(
            f"In cooldown until {record.cooldown_until.isoformat()} "
            f"(severity {record.severity_level}), thresholds tightened"
        )
        return record.cooldown_until, record.severity_level

    async def _current_severity(self, now: datetime) -> int:
        """
        Severity from triggers in the trailing 24 hours.

        3+ triggers -> one level above the worst, 2 -> the worst (at most one
        below the cap), 1 -> the worst, none -> back to 1.
        """
        count, max_level = await self.store.get_trigger_stats(now - timedelta(hours=24))
        cap = self.config.max_severity_level

        if count >= 3:
            return min(max_level + 1, cap)
        if count >= 2:
            return min(max_level, max(1, cap - 1))
        if count >= 1:
            return min(max_level, cap)
        return 1

    async def _in_grace_period(self, now: datetime) -> bool:
        manual_since = now - timedelta(hours=self.config.manual_reset_grace_hours)
        reset = await self.store.get_latest_manual_reset(manual_since)
        if reset is not None:
            reset_time = reset.reset_at or reset.triggered_at
            logger.info(
                f"Manual reset grace period: breaker #{reset.id} cleared at "
                f"{reset_time.isoformat() if reset_time else 'unknown'}"
            )
            return True

        expiry_since = now - timedelta(minutes=self.config.auto_resume_grace_minutes)
        expiry = await self.store.get_recent_expiry(expiry_since, now)
        if expiry is not None:
            logger.info(
                f"Auto-resume grace period: breaker #{expiry.id} "
                f"resumed at {expiry.resume_at_raw}"
            )
            return True

        return False

    # =========================================================================
    # Triggers
    # =========================================================================

    def _day_start(self, now: datetime) -> datetime:
        """Local midnight in the configured timezone, as UTC"""
        tz = self.config.tz
        local_now = now.astimezone(tz)
        midnight = tz.localize(datetime(local_now.year, local_now.month, local_now.day))
        return midnight.astimezone(timezone.utc)

    async def _find_breach(
        self,
        now: datetime,
        balance: float,
        multiplier: float,
        in_cooldown: bool
    ) -> Optional[Tuple[TriggerType, str, float, Dict[str, Any]]]:
        """First breached trigger as (type, reason, base hours, details)"""
        cfg = self.config
        suffix = " (cooldown, thresholds tightened)" if in_cooldown else ""

        base_details = {
            "balance": balance,
            "multiplier": multiplier,
            "in_cooldown": in_cooldown,
        }

        windows = [
            (TriggerType.DAILY_LOSS, "Daily", self._day_start(now),
             cfg.daily_loss_limit_pct, cfg.daily_base_hours),
            (TriggerType.HOURLY_LOSS, "1-hour", now - timedelta(hours=1),
             cfg.hourly_loss_limit_pct, cfg.hourly_base_hours),
            (TriggerType.FOUR_HOUR_LOSS, "4-hour", now - timedelta(hours=4),
             cfg.four_hour_loss_limit_pct, cfg.four_hour_base_hours),
        ]

        for trigger_type, label, since, limit_pct, base_hours in windows:
            pnl = await self.store.sum_closed_pnl_since(since)
            loss_pct = pnl * 100 / balance
            threshold = -limit_pct * multiplier
            logger.debug(f"{label} PnL {pnl:.2f} ({loss_pct:.2f}%) vs {threshold:.2f}%")

            if loss_pct <= threshold:
                reason = f"{label} loss {loss_pct:.2f}% breached {threshold:.2f}% limit{suffix}"
                details = dict(
                    base_details,
                    pnl=pnl,
                    loss_pct=loss_pct,
                    threshold_pct=threshold,
                    window_start=since.isoformat(),
                )
                return trigger_type, reason, base_hours, details

        # Consecutive losses
        required = cfg.cooldown_consecutive_loss_count if in_cooldown else cfg.consecutive_loss_count
        recent = await self.store.get_recent_closed_trades(required)
        if len(recent) == required and all(t.pnl is not None and t.pnl < 0 for t in recent):
            oldest = recent[-1].timestamp
            span = now - oldest
            if span <= timedelta(hours=cfg.consecutive_loss_window_hours):
                total = sum(t.pnl for t in recent)
                reason = (
                    f"{required} consecutive losing trades within "
                    f"{span.total_seconds() / 3600:.1f}h{suffix}"
                )
                details = dict(
                    base_details,
                    pnl=total,
                    loss_pct=total * 100 / balance,
                    required_count=required,
                    trade_ids=[t.id for t in recent],
                    window_start=oldest.isoformat(),
                )
                return TriggerType.CONSECUTIVE_LOSS, reason, cfg.consecutive_base_hours, details

        # Single large loss
        latest = recent[:1] if recent else await self.store.get_recent_closed_trades(1)
        if latest and latest[0].pnl is not None:
            trade = latest[0]
            loss_pct = trade.pnl * 100 / balance
            threshold = -cfg.single_loss_limit_pct * multiplier
            if loss_pct <= threshold:
                reason = (
                    f"Single trade loss {loss_pct:.2f}% on {trade.symbol} "
                    f"breached {threshold:.2f}% limit{suffix}"
                )
                details = dict(
                    base_details,
                    pnl=trade.pnl,
                    loss_pct=loss_pct,
                    threshold_pct=threshold,
                    trade_id=trade.id,
                    symbol=trade.symbol,
                )
                return TriggerType.SINGLE_LARGE_LOSS, reason, cfg.single_loss_base_hours, details

        return None

    async def _trip(
        self,
        now: datetime,
        trigger_type: TriggerType,
        reason: str,
        base_hours: float,
        severity: int,
        details: Dict[str, Any]
    ) -> CircuitBreakerStatus:
        """Record a new active breaker and return the halted status"""
        duration = timedelta(hours=base_hours * 2 ** (severity - 1))
        resume_at = now + duration
        cooldown_until = resume_at + timedelta(hours=self.config.cooldown_hours)
        details = dict(details, severity_level=severity, duration_hours=duration.total_seconds() / 3600)

        logger.warning(
            f"CIRCUIT BREAKER TRIGGERED [{trigger_type.value}] severity {severity}: "
            f"{reason} - halted until {resume_at.isoformat()}"
        )

        status = CircuitBreakerStatus(
            should_halt=True,
            reason=reason,
            resume_time=resume_at,
            severity_level=severity,
            cooldown_until=cooldown_until,
            trigger_type=trigger_type,
        )

        try:
            await self.store.record_circuit_breaker(
                reason=reason,
                triggered_at=now,
                resume_at=resume_at,
                severity_level=severity,
                cooldown_until=cooldown_until,
                trigger_type=trigger_type,
                trigger_details=details,
            )
        except aiosqlite.IntegrityError as e:
            # Another writer already holds the single active slot
            logger.warning(f"Circuit breaker already active, not recording a second one: {e}")

        return status

    # =========================================================================
    # Operator actions and reads
    # =========================================================================

    async def reset(self, now: Optional[datetime] = None) -> bool:
        """
        Manually clear every active breaker.

        True even when nothing was active; False only when the store fails.
        """
        now = _as_utc(now)
        try:
            count = await self.store.reset_active_breakers(now)
        except Exception as e:
            logger.exception(f"Circuit breaker reset failed: {e}")
            return False

        if count:
            logger.info(f"Circuit breaker manually reset ({count} record(s)) at {now.isoformat()}")
        else:
            logger.info("Circuit breaker reset requested with no active breaker")
        return True

    async def get_active_record(self) -> Optional[CircuitBreakerRecord]:
        return await self.store.get_active_breaker()

    async def get_history(self, limit: int = 50) -> List[CircuitBreakerRecord]:
        """Audit trail, newest first"""
        return await self.store.get_breaker_history(limit)
