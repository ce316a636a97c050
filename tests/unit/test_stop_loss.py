"""
Tests for the dynamic stop-loss table.

Breakpoints sit at 5x, 10x, 15x and 20x; the line only ever tightens as
leverage rises.
"""

import pytest

from src.risk.stop_loss import get_dynamic_stop_loss, should_force_close


class TestDynamicStopLoss:

    @pytest.mark.parametrize("leverage,expected", [
        (1, -30.0),
        (4.9, -30.0),
        (5, -25.0),
        (9, -25.0),
        (10, -22.0),
        (14, -22.0),
        (15, -18.0),
        (19, -18.0),
        (20, -15.0),
        (100, -15.0),
    ])
    def test_bands(self, leverage, expected):
        assert get_dynamic_stop_loss(leverage) == expected

    def test_monotone_non_decreasing(self):
        """Higher leverage never loosens the stop."""
        values = [get_dynamic_stop_loss(lev) for lev in range(1, 41)]
        assert values == sorted(values)

    def test_force_close_at_exact_line(self):
        assert should_force_close(-22.0, 10) is True

    def test_no_force_close_above_line(self):
        assert should_force_close(-21.99, 10) is False

    def test_high_leverage_closes_earlier(self):
        # -16% is fine at 10x but past the line at 20x
        assert should_force_close(-16.0, 10) is False
        assert should_force_close(-16.0, 20) is True
