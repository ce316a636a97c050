"""
Tests for the circuit breaker.

NOW is 2026-03-10 20:00 UTC; every "today" trade sits after 00:00 UTC.
Balance is 1000 unless a test says otherwise, so -10 pnl is -1%.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import aiosqlite
import pytest
import pytest_asyncio

from src.risk import CircuitBreaker, RiskControlConfig
from src.store import BreakerStatus, TradingStore, TriggerType, to_db_timestamp

from factories import LEGACY_TRADES_TABLE, NOW, add_close, set_balance, write_legacy_database


@pytest_asyncio.fixture
async def breaker(store):
    await set_balance(store, 1000.0)
    return CircuitBreaker(store, RiskControlConfig())


async def _past_breaker(store, triggered_hours_ago, severity=1, duration_hours=1.0,
                        cooldown_after_resume_hours=0.5):
    """A breaker that already ran and expired, well outside the grace windows"""
    triggered = NOW - timedelta(hours=triggered_hours_ago)
    resume = triggered + timedelta(hours=duration_hours)
    await store.record_circuit_breaker(
        reason=f"past halt sev {severity}",
        triggered_at=triggered,
        resume_at=resume,
        severity_level=severity,
        cooldown_until=resume + timedelta(hours=cooldown_after_resume_hours),
        trigger_type=TriggerType.SINGLE_LARGE_LOSS,
        trigger_details={},
    )
    await store.expire_active_breakers()


class TestNoHalt:

    @pytest.mark.asyncio
    async def test_clean_history(self, breaker):
        status = await breaker.check(NOW)
        assert status.should_halt is False
        assert status.severity_level == 1
        assert status.is_in_cooldown is False

    @pytest.mark.asyncio
    async def test_default_balance_when_no_snapshot(self, store):
        # -40 against the 1000 fallback is a single large loss
        await add_close(store, -40.0, NOW - timedelta(hours=2))
        status = await CircuitBreaker(store, RiskControlConfig()).check(NOW)
        assert status.trigger_type == TriggerType.SINGLE_LARGE_LOSS

    @pytest.mark.asyncio
    async def test_small_losses_do_not_trip(self, breaker, store):
        await add_close(store, -20.0, NOW - timedelta(hours=3))
        await add_close(store, 15.0, NOW - timedelta(hours=2))
        status = await breaker.check(NOW)
        assert status.should_halt is False
        assert await store.count_active_breakers() == 0


class TestTriggers:

    @pytest.mark.asyncio
    async def test_daily_loss(self, breaker, store):
        for hours in (10, 9, 8):
            await add_close(store, -50.0, NOW - timedelta(hours=hours))

        status = await breaker.check(NOW)

        assert status.should_halt is True
        assert status.trigger_type == TriggerType.DAILY_LOSS
        assert status.resume_time == NOW + timedelta(hours=12)
        assert status.cooldown_until == NOW + timedelta(hours=18)
        assert status.severity_level == 1
        assert "Daily loss -15.00%" in status.reason

        active = await store.get_active_breaker()
        assert active.trigger_type == TriggerType.DAILY_LOSS
        assert active.trigger_details["loss_pct"] == pytest.approx(-15.0)
        assert active.trigger_details["in_cooldown"] is False

    @pytest.mark.asyncio
    async def test_hourly_loss(self, breaker, store):
        await add_close(store, -30.0, NOW - timedelta(minutes=30))
        await add_close(store, -30.0, NOW - timedelta(minutes=20))

        status = await breaker.check(NOW)

        assert status.trigger_type == TriggerType.HOURLY_LOSS
        assert status.resume_time == NOW + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_four_hour_loss(self, breaker, store):
        await add_close(store, -25.0, NOW - timedelta(hours=3))
        await add_close(store, -30.0, NOW - timedelta(hours=2, minutes=30))
        await add_close(store, -30.0, NOW - timedelta(hours=2))

        status = await breaker.check(NOW)

        assert status.trigger_type == TriggerType.FOUR_HOUR_LOSS
        assert status.resume_time == NOW + timedelta(hours=4)

    @pytest.mark.asyncio
    async def test_consecutive_losses_within_window(self, breaker, store):
        for minutes in (180, 150, 120, 90, 30):
            await add_close(store, -5.0, NOW - timedelta(minutes=minutes))

        status = await breaker.check(NOW)

        assert status.should_halt is True
        assert status.trigger_type == TriggerType.CONSECUTIVE_LOSS
        assert status.resume_time == NOW + timedelta(hours=2)
        assert "5 consecutive" in status.reason

    @pytest.mark.asyncio
    async def test_consecutive_losses_spread_too_wide(self, breaker, store):
        for hours in (5, 4, 3, 2, 1):
            await add_close(store, -5.0, NOW - timedelta(hours=hours))

        status = await breaker.check(NOW)
        assert status.should_halt is False

    @pytest.mark.asyncio
    async def test_win_breaks_the_streak(self, breaker, store):
        for minutes, pnl in ((180, -5.0), (150, -5.0), (120, 1.0), (90, -5.0), (30, -5.0)):
            await add_close(store, pnl, NOW - timedelta(minutes=minutes))

        status = await breaker.check(NOW)
        assert status.should_halt is False

    @pytest.mark.asyncio
    async def test_single_large_loss(self, breaker, store):
        await add_close(store, -40.0, NOW - timedelta(hours=2))

        status = await breaker.check(NOW)

        assert status.trigger_type == TriggerType.SINGLE_LARGE_LOSS
        assert status.resume_time == NOW + timedelta(hours=1)
        assert status.minutes_remaining(NOW) == 60

    @pytest.mark.parametrize("tz,halted", [("UTC", True), ("Asia/Shanghai", False)])
    @pytest.mark.asyncio
    async def test_daily_boundary_follows_configured_timezone(self, store, tz, halted):
        """20:00 UTC is 04:00 the next day in Shanghai, so the trades fall on yesterday"""
        await set_balance(store, 1000.0)
        for hour in (9, 10, 11, 12, 13, 14):
            await add_close(store, -25.0, NOW.replace(hour=hour))

        status = await CircuitBreaker(store, RiskControlConfig(timezone=tz)).check(NOW)

        assert status.should_halt is halted
        if halted:
            assert status.trigger_type == TriggerType.DAILY_LOSS

    @pytest.mark.asyncio
    async def test_legacy_local_time_trades_stay_out_of_hourly_window(self, tmp_path):
        # 20:5x+08:00 reads as "after 19:00" as text but is 12:5xZ
        db_path = tmp_path / "legacy.db"
        write_legacy_database(db_path, LEGACY_TRADES_TABLE + """
            INSERT INTO trades (symbol, side, type, pnl, timestamp) VALUES
                ('BTC', 'long', 'close', -20.0, '2026-03-10T20:55:00.000+08:00'),
                ('ETH', 'long', 'close', -20.0, '2026-03-10T20:56:00.000+08:00'),
                ('SOL', 'short', 'close', -20.0, '2026-03-10T20:57:00.000+08:00');
        """)
        store = TradingStore(str(db_path))
        await store.initialize()
        await set_balance(store, 1000.0)

        status = await CircuitBreaker(store, RiskControlConfig()).check(NOW)

        assert status.should_halt is False
        assert await store.count_active_breakers() == 0


class TestActiveBreaker:

    @pytest.mark.asyncio
    async def test_still_running_is_halted_without_mutation(self, breaker, store):
        record_id = await store.record_circuit_breaker(
            reason="Hourly loss", triggered_at=NOW - timedelta(hours=1),
            resume_at=NOW + timedelta(hours=1), severity_level=2,
            cooldown_until=NOW + timedelta(hours=7),
            trigger_type=TriggerType.HOURLY_LOSS, trigger_details={},
        )

        status = await breaker.check(NOW)

        assert status.should_halt is True
        assert status.reason == "Hourly loss"
        assert status.resume_time == NOW + timedelta(hours=1)
        assert status.severity_level == 2
        active = await store.get_active_breaker()
        assert active.id == record_id
        assert await store.count_active_breakers() == 1

    @pytest.mark.asyncio
    async def test_auto_resume_expires_record(self, breaker, store):
        await store.record_circuit_breaker(
            reason="Single loss", triggered_at=NOW - timedelta(hours=1, minutes=1),
            resume_at=NOW - timedelta(minutes=1), severity_level=1,
            cooldown_until=NOW + timedelta(hours=6),
            trigger_type=TriggerType.SINGLE_LARGE_LOSS, trigger_details={},
        )
        # Would re-trip immediately were it not for the auto-resume grace
        await add_close(store, -40.0, NOW - timedelta(hours=2))

        status = await breaker.check(NOW)

        assert status.should_halt is False
        assert status.is_in_cooldown is True
        assert await store.count_active_breakers() == 0
        history = await store.get_breaker_history()
        assert history[0].status == BreakerStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_malformed_resume_at_stays_halted(self, breaker, store):
        async with aiosqlite.connect(str(store.db_path)) as db:
            await db.execute(
                "INSERT INTO circuit_breaker_log (reason, triggered_at, resume_at, status) "
                "VALUES ('corrupt', ?, 'not-a-timestamp', 'active')",
                (to_db_timestamp(NOW - timedelta(hours=1)),)
            )
            await db.commit()

        status = await breaker.check(NOW)

        assert status.should_halt is True
        assert status.resume_time == NOW + timedelta(hours=2)
        assert await store.count_active_breakers() == 1


class TestSeverityEscalation:

    @pytest.mark.asyncio
    async def test_third_trigger_in_24h_escalates(self, breaker, store):
        await _past_breaker(store, 20, severity=1)
        await _past_breaker(store, 15, severity=2)
        await _past_breaker(store, 10, severity=2)
        await add_close(store, -40.0, NOW - timedelta(hours=2))

        status = await breaker.check(NOW)

        assert status.severity_level == 3
        # Single-loss base 1h doubled twice
        assert status.resume_time == NOW + timedelta(hours=4)

    @pytest.mark.asyncio
    async def test_escalation_caps_at_four(self, breaker, store):
        for hours in (20, 15, 10):
            await _past_breaker(store, hours, severity=4)
        await add_close(store, -40.0, NOW - timedelta(hours=2))

        status = await breaker.check(NOW)

        assert status.severity_level == 4
        assert status.resume_time == NOW + timedelta(hours=8)

    @pytest.mark.asyncio
    async def test_two_triggers_hold_at_most_three(self, breaker, store):
        await _past_breaker(store, 15, severity=4)
        await _past_breaker(store, 10, severity=4)
        await add_close(store, -40.0, NOW - timedelta(hours=2))

        status = await breaker.check(NOW)
        assert status.severity_level == 3

    @pytest.mark.asyncio
    async def test_quiet_day_resets_to_one(self, breaker, store):
        await _past_breaker(store, 72, severity=4)
        await add_close(store, -40.0, NOW - timedelta(hours=2))

        status = await breaker.check(NOW)

        assert status.severity_level == 1
        assert status.resume_time == NOW + timedelta(hours=1)


class TestCooldown:

    @pytest_asyncio.fixture
    async def trades_7_5_pct_today(self, store):
        # -7.5% today, none in the last 4h, each trade only -2.5%
        for hours in (14, 12, 10):
            await add_close(store, -25.0, NOW - timedelta(hours=hours))

    @pytest.mark.asyncio
    async def test_half_threshold_trips_in_cooldown(self, breaker, store, trades_7_5_pct_today):
        # Ended 3h ago, cooldown runs 3h more
        await _past_breaker(store, 5, duration_hours=2, cooldown_after_resume_hours=6)

        status = await breaker.check(NOW)

        assert status.should_halt is True
        assert status.trigger_type == TriggerType.DAILY_LOSS
        active = await store.get_active_breaker()
        assert active.trigger_details["in_cooldown"] is True
        assert active.trigger_details["threshold_pct"] == pytest.approx(-7.5)

    @pytest.mark.asyncio
    async def test_same_loss_outside_cooldown_is_fine(self, breaker, trades_7_5_pct_today):
        status = await breaker.check(NOW)
        assert status.should_halt is False
        assert status.is_in_cooldown is False

    @pytest.mark.asyncio
    async def test_three_losses_enough_in_cooldown(self, breaker, store):
        await _past_breaker(store, 5, duration_hours=2, cooldown_after_resume_hours=6)
        for minutes in (180, 120, 90):
            await add_close(store, -2.0, NOW - timedelta(minutes=minutes))

        status = await breaker.check(NOW)

        assert status.trigger_type == TriggerType.CONSECUTIVE_LOSS
        assert "3 consecutive" in status.reason

    @pytest.mark.asyncio
    async def test_cooldown_severity_carries_over(self, breaker, store):
        # Triggered 30h ago (outside the 24h lookback) but cooldown still running
        await _past_breaker(store, 30, severity=3, duration_hours=8, cooldown_after_resume_hours=24)

        status = await breaker.check(NOW)

        assert status.should_halt is False
        assert status.is_in_cooldown is True
        assert status.severity_level == 3


class TestGracePeriods:

    @pytest.mark.asyncio
    async def test_manual_reset_grace(self, breaker, store):
        await store.record_circuit_breaker(
            reason="halt", triggered_at=NOW - timedelta(hours=2),
            resume_at=NOW + timedelta(hours=2), severity_level=1,
            cooldown_until=NOW + timedelta(hours=8),
            trigger_type=TriggerType.SINGLE_LARGE_LOSS, trigger_details={},
        )
        assert await breaker.reset(NOW - timedelta(hours=1)) is True
        await add_close(store, -40.0, NOW - timedelta(minutes=90))

        status = await breaker.check(NOW)
        assert status.should_halt is False

    @pytest.mark.asyncio
    async def test_grace_expires(self, breaker, store):
        await store.record_circuit_breaker(
            reason="halt", triggered_at=NOW - timedelta(hours=6),
            resume_at=NOW + timedelta(hours=2), severity_level=1,
            cooldown_until=NOW - timedelta(minutes=1),
            trigger_type=TriggerType.SINGLE_LARGE_LOSS, trigger_details={},
        )
        await breaker.reset(NOW - timedelta(hours=5))
        await add_close(store, -40.0, NOW - timedelta(minutes=90))

        status = await breaker.check(NOW)
        assert status.trigger_type == TriggerType.SINGLE_LARGE_LOSS


class TestResetAndSingleActive:

    @pytest.mark.asyncio
    async def test_reset_is_idempotent(self, breaker, store):
        await add_close(store, -40.0, NOW - timedelta(hours=2))
        assert (await breaker.check(NOW)).should_halt is True

        assert await breaker.reset(NOW) is True
        assert await breaker.reset(NOW) is True
        assert await store.count_active_breakers() == 0
        assert (await breaker.get_history())[0].status == BreakerStatus.MANUALLY_RESET

    @pytest.mark.asyncio
    async def test_reset_with_nothing_active(self, breaker):
        assert await breaker.reset(NOW) is True

    @pytest.mark.asyncio
    async def test_concurrent_records_leave_one_active(self, store):
        async def trip(i):
            await store.record_circuit_breaker(
                reason=f"halt {i}", triggered_at=NOW, resume_at=NOW + timedelta(hours=1),
                severity_level=1, cooldown_until=NOW + timedelta(hours=7),
                trigger_type=TriggerType.HOURLY_LOSS, trigger_details={},
            )

        await asyncio.gather(*(trip(i) for i in range(5)))

        assert await store.count_active_breakers() == 1
        assert len(await store.get_breaker_history()) == 5

    @pytest.mark.asyncio
    async def test_repeated_checks_never_stack_records(self, breaker, store):
        await add_close(store, -40.0, NOW - timedelta(hours=2))
        for minutes in (0, 10, 20, 30):
            assert (await breaker.check(NOW + timedelta(minutes=minutes))).should_halt is True
        assert len(await breaker.get_history()) == 1


class TestFailureHandling:

    @pytest.fixture
    def broken_store(self):
        store = AsyncMock()
        store.get_active_breaker.side_effect = RuntimeError("database is locked")
        store.reset_active_breakers.side_effect = RuntimeError("database is locked")
        return store

    @pytest.mark.asyncio
    async def test_fail_open_by_default(self, broken_store):
        status = await CircuitBreaker(broken_store, RiskControlConfig()).check(NOW)
        assert status.should_halt is False

    @pytest.mark.asyncio
    async def test_fail_closed_when_configured(self, broken_store):
        config = RiskControlConfig(fail_open=False)
        status = await CircuitBreaker(broken_store, config).check(NOW)
        assert status.should_halt is True
        assert "database is locked" in status.reason

    @pytest.mark.asyncio
    async def test_reset_failure_returns_false(self, broken_store):
        assert await CircuitBreaker(broken_store, RiskControlConfig()).reset(NOW) is False

    @pytest.mark.asyncio
    async def test_integrity_error_still_halts(self):
        store = AsyncMock()
        store.get_active_breaker.return_value = None
        store.get_latest_cooldown_record.return_value = None
        store.get_trigger_stats.return_value = (0, 1)
        store.get_latest_manual_reset.return_value = None
        store.get_recent_expiry.return_value = None
        store.get_latest_balance.return_value = 1000.0
        store.sum_closed_pnl_since.return_value = -200.0
        store.record_circuit_breaker.side_effect = aiosqlite.IntegrityError("UNIQUE constraint failed")

        status = await CircuitBreaker(store, RiskControlConfig()).check(NOW)

        assert status.should_halt is True
        assert status.trigger_type == TriggerType.DAILY_LOSS
