"""
Tests for the anomaly detectors.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import numpy as np
import pytest
import pytest_asyncio

from src.risk import (
    AnomalyDetector,
    AnomalySeverity,
    ExistingPosition,
    RiskControlConfig,
)
from src.store import PositionSide

from factories import NOW, add_open, add_prices, set_balance


def _walk(seed: int, n: int = 60) -> list:
    rng = np.random.default_rng(seed)
    return [float(p) for p in 100 * np.cumprod(1 + rng.normal(0, 0.01, n))]


@pytest_asyncio.fixture
async def detector(store):
    await set_balance(store, 1000.0)
    return AnomalyDetector(store, RiskControlConfig())


class TestPositionSize:

    @pytest.mark.asyncio
    async def test_over_half_the_account(self, detector):
        check = await detector.detect_anomalous_position("BTC", 600.0, 1)
        assert check.is_anomalous is True
        assert check.severity == AnomalySeverity.HIGH
        assert "60.0%" in check.reason

    @pytest.mark.asyncio
    async def test_effective_exposure(self, detector):
        # 20% of the account at 18x is 360% exposure
        check = await detector.detect_anomalous_position("BTC", 200.0, 18)
        assert check.severity == AnomalySeverity.HIGH
        assert "360.0%" in check.reason

    @pytest.mark.asyncio
    async def test_high_leverage_medium(self, store):
        await set_balance(store, 1000.0)
        detector = AnomalyDetector(store, RiskControlConfig(max_effective_exposure_pct=1000.0))

        check = await detector.detect_anomalous_position("BTC", 350.0, 15)

        assert check.is_anomalous is True
        assert check.severity == AnomalySeverity.MEDIUM

    @pytest.mark.asyncio
    async def test_reasonable_position(self, detector):
        check = await detector.detect_anomalous_position("BTC", 100.0, 2)
        assert check.is_anomalous is False

    @pytest.mark.asyncio
    async def test_default_balance_without_snapshot(self, store):
        detector = AnomalyDetector(store, RiskControlConfig(default_balance=1000.0))
        check = await detector.detect_anomalous_position("BTC", 600.0, 1)
        assert check.severity == AnomalySeverity.HIGH

    @pytest.mark.asyncio
    async def test_store_failure_fails_open(self):
        store = AsyncMock()
        store.get_latest_balance.side_effect = RuntimeError("disk I/O error")
        check = await AnomalyDetector(store).detect_anomalous_position("BTC", 900.0, 20)
        assert check.is_anomalous is False


class TestFrequency:

    @pytest.mark.asyncio
    async def test_three_opens_in_an_hour(self, detector, store):
        for minutes in (50, 30, 5):
            await add_open(store, "SOL", NOW - timedelta(minutes=minutes))

        check = await detector.detect_frequent_trading("SOL", NOW)

        assert check.is_anomalous is True
        assert check.severity == AnomalySeverity.MEDIUM
        assert "3 times" in check.reason

    @pytest.mark.asyncio
    async def test_older_opens_ignored(self, detector, store):
        for minutes in (90, 70, 5):
            await add_open(store, "SOL", NOW - timedelta(minutes=minutes))
        await add_open(store, "BTC", NOW - timedelta(minutes=10))

        check = await detector.detect_frequent_trading("SOL", NOW)
        assert check.is_anomalous is False


class TestCorrelation:

    @pytest.mark.asyncio
    async def test_not_enough_history(self, detector, store):
        prices = _walk(1, 29)
        await add_prices(store, "BTC", prices)
        await add_prices(store, "ETH", prices)

        assert await detector.calculate_correlation("BTC", "ETH") == 0.0

    @pytest.mark.asyncio
    async def test_lockstep_symbols(self, detector, store):
        prices = _walk(2)
        await add_prices(store, "BTC", prices)
        await add_prices(store, "ETH", [p * 0.05 for p in prices])

        assert await detector.calculate_correlation("BTC", "ETH") == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_same_direction_is_flagged(self, detector, store):
        prices = _walk(3)
        await add_prices(store, "BTC", prices)
        await add_prices(store, "ETH", [p * 0.05 for p in prices])

        check = await detector.detect_correlation_risk(
            "ETH", PositionSide.LONG, [ExistingPosition("BTC", PositionSide.LONG)]
        )

        assert check.is_anomalous is True
        assert check.severity == AnomalySeverity.MEDIUM
        assert "BTC" in check.reason

    @pytest.mark.asyncio
    async def test_opposite_direction_is_a_hedge(self, detector, store):
        prices = _walk(4)
        await add_prices(store, "BTC", prices)
        await add_prices(store, "ETH", [p * 0.05 for p in prices])

        check = await detector.detect_correlation_risk(
            "ETH", PositionSide.SHORT, [ExistingPosition("BTC", PositionSide.LONG)]
        )
        assert check.is_anomalous is False

    @pytest.mark.asyncio
    async def test_independent_symbols(self, detector, store):
        await add_prices(store, "BTC", _walk(5, 100))
        await add_prices(store, "DOGE", _walk(6, 100))

        check = await detector.detect_correlation_risk(
            "DOGE", PositionSide.LONG, [ExistingPosition("BTC", PositionSide.LONG)]
        )
        assert check.is_anomalous is False

    @pytest.mark.asyncio
    async def test_no_positions(self, detector):
        check = await detector.detect_correlation_risk("BTC", PositionSide.LONG, [])
        assert check.is_anomalous is False


@pytest.mark.asyncio
async def test_detect_all_order(detector):
    checks = await detector.detect_all(
        "BTC", PositionSide.LONG, 600.0, 1, existing_positions=[], now=NOW
    )
    assert len(checks) == 3
    assert checks[0].severity == AnomalySeverity.HIGH
    assert not checks[1].is_anomalous
    assert not checks[2].is_anomalous
