"""
Tests for config loading - fail closed on anything missing or wrong.
"""

from pathlib import Path

import pytest

from src.risk import RiskConfigError, RiskControlConfig
from src.scheduler import TradingLoopConfig


REPO_CONFIG = Path(__file__).resolve().parents[2] / "config.yaml"


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestRiskControlConfig:

    def test_defaults_are_valid(self):
        config = RiskControlConfig()
        assert config.daily_loss_limit_pct == 15.0
        assert config.cooldown_threshold_multiplier == 0.5
        assert config.max_severity_level == 4
        assert config.fail_open is True

    def test_every_invalid_value_reported(self):
        with pytest.raises(RiskConfigError) as exc_info:
            RiskControlConfig(daily_loss_limit_pct=-1, cooldown_threshold_multiplier=1.5)
        message = str(exc_info.value)
        assert "daily_loss_limit_pct" in message
        assert "cooldown_threshold_multiplier" in message

    def test_cooldown_count_cannot_exceed_normal_count(self):
        with pytest.raises(RiskConfigError, match="cooldown_consecutive_loss_count"):
            RiskControlConfig(consecutive_loss_count=3, cooldown_consecutive_loss_count=4)

    def test_unknown_timezone(self):
        with pytest.raises(RiskConfigError, match="timezone"):
            RiskControlConfig(timezone="Mars/Olympus_Mons")

    def test_grace_windows_may_be_zero(self):
        config = RiskControlConfig(manual_reset_grace_hours=0, auto_resume_grace_minutes=0)
        assert config.manual_reset_grace_hours == 0

    def test_missing_file(self, tmp_path):
        with pytest.raises(RiskConfigError, match="not found"):
            RiskControlConfig.load_from_yaml(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path):
        with pytest.raises(RiskConfigError, match="empty"):
            RiskControlConfig.load_from_yaml(_write(tmp_path, ""))

    def test_broken_yaml(self, tmp_path):
        with pytest.raises(RiskConfigError, match="parse"):
            RiskControlConfig.load_from_yaml(_write(tmp_path, "risk_control: [unclosed"))

    def test_missing_section(self, tmp_path):
        with pytest.raises(RiskConfigError, match="risk_control"):
            RiskControlConfig.load_from_yaml(_write(tmp_path, "trading:\n  interval_minutes: 5\n"))

    def test_unknown_key(self, tmp_path):
        path = _write(tmp_path, "risk_control:\n  daily_loss_limit_pct: 10\n  max_drawdown: 5\n")
        with pytest.raises(RiskConfigError, match="max_drawdown"):
            RiskControlConfig.load_from_yaml(path)

    def test_partial_section_keeps_other_defaults(self, tmp_path):
        path = _write(tmp_path, "risk_control:\n  daily_loss_limit_pct: 10\n  timezone: Asia/Shanghai\n")
        config = RiskControlConfig.load_from_yaml(path)
        assert config.daily_loss_limit_pct == 10
        assert config.timezone == "Asia/Shanghai"
        assert config.hourly_loss_limit_pct == 5.0

    def test_invalid_value_in_file(self, tmp_path):
        path = _write(tmp_path, "risk_control:\n  single_loss_limit_pct: 0\n")
        with pytest.raises(RiskConfigError, match="single_loss_limit_pct"):
            RiskControlConfig.load_from_yaml(path)

    def test_shipped_config_loads(self):
        assert RiskControlConfig.load_from_yaml(str(REPO_CONFIG)) == RiskControlConfig()


class TestTradingLoopConfig:

    def test_defaults(self):
        config = TradingLoopConfig()
        assert config.interval_minutes == 5.0
        assert config.account_stop_loss_usdt is None

    def test_take_profit_must_exceed_stop_loss(self):
        with pytest.raises(RiskConfigError, match="account_take_profit_usdt"):
            TradingLoopConfig(account_stop_loss_usdt=500, account_take_profit_usdt=400)

    def test_empty_symbols(self):
        with pytest.raises(RiskConfigError, match="symbols"):
            TradingLoopConfig(symbols=[])

    def test_unknown_key(self, tmp_path):
        path = _write(tmp_path, "trading:\n  interval_minutes: 5\n  leverage: 10\n")
        with pytest.raises(RiskConfigError, match="leverage"):
            TradingLoopConfig.load_from_yaml(path)

    def test_shipped_config_loads(self):
        config = TradingLoopConfig.load_from_yaml(str(REPO_CONFIG))
        assert config.account_stop_loss_usdt < config.account_take_profit_usdt
        assert "BTC" in config.symbols
