"""
Risk Control Configuration - every threshold in one place

FAIL CLOSED PRINCIPLE:
- Missing config file -> RiskConfigError (not defaults)
- Invalid values -> RiskConfigError (not silent correction)
- Parse errors -> RiskConfigError (not empty config)

Defaults exist for unit tests with explicit construction.
Production code loads config via RiskControlConfig.load_from_yaml().
"""

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict

import pytz
import yaml

logger = logging.getLogger(__name__)


class RiskConfigError(Exception):
    """Raised when risk configuration is invalid or missing."""
    pass


@dataclass
class RiskControlConfig:
    """
    Thresholds for the circuit breaker and anomaly detectors.

    Loss limits are positive percentages of the reference balance; the
    breaker compares against their negation.
    """
    # Circuit breaker trigger thresholds (% of balance)
    daily_loss_limit_pct: float = 15.0
    hourly_loss_limit_pct: float = 5.0
    four_hour_loss_limit_pct: float = 8.0
    single_loss_limit_pct: float = 3.0

    # Consecutive loss trigger
    consecutive_loss_count: int = 5
    cooldown_consecutive_loss_count: int = 3
    consecutive_loss_window_hours: float = 4.0

    # Base halt durations (hours), doubled per severity level above 1
    daily_base_hours: float = 12.0
    hourly_base_hours: float = 2.0
    four_hour_base_hours: float = 4.0
    consecutive_base_hours: float = 2.0
    single_loss_base_hours: float = 1.0

    # Cooldown and grace periods
    cooldown_hours: float = 6.0
    cooldown_threshold_multiplier: float = 0.5
    manual_reset_grace_hours: float = 4.0
    auto_resume_grace_minutes: float = 10.0
    max_severity_level: int = 4

    # Balance fallback when account_history is empty
    default_balance: float = 1000.0

    # Daily loss boundary is local midnight in this timezone
    timezone: str = "UTC"

    # Internal breaker errors allow trading (True) or halt it (False)
    fail_open: bool = True

    # Position-size anomaly
    max_position_pct: float = 50.0
    max_effective_exposure_pct: float = 200.0
    high_leverage_threshold: float = 15.0
    high_leverage_position_pct: float = 30.0

    # Frequency anomaly
    max_opens_per_hour: int = 3

    # Correlation anomaly
    correlation_threshold: float = 0.8
    correlation_lookback: int = 100
    correlation_min_points: int = 30
    correlation_min_returns: int = 20

    def __post_init__(self):
        """Validate config values - fail closed on invalid."""
        self._validate()

    def _validate(self):
        """
        Validate all config values are sane.

        Raises RiskConfigError listing every invalid value.
        """
        errors = []

        positive_floats = [
            "daily_loss_limit_pct", "hourly_loss_limit_pct",
            "four_hour_loss_limit_pct", "single_loss_limit_pct",
            "consecutive_loss_window_hours",
            "daily_base_hours", "hourly_base_hours", "four_hour_base_hours",
            "consecutive_base_hours", "single_loss_base_hours",
            "cooldown_hours", "default_balance",
            "max_position_pct", "max_effective_exposure_pct",
            "high_leverage_threshold", "high_leverage_position_pct",
        ]
        for name in positive_floats:
            value = getattr(self, name)
            if value <= 0:
                errors.append(f"{name} must be > 0, got {value}")

        # Grace windows may be switched off with 0
        if self.manual_reset_grace_hours < 0:
            errors.append(f"manual_reset_grace_hours must be >= 0, got {self.manual_reset_grace_hours}")
        if self.auto_resume_grace_minutes < 0:
            errors.append(f"auto_resume_grace_minutes must be >= 0, got {self.auto_resume_grace_minutes}")

        # Cooldown can only make thresholds stricter
        if not 0 < self.cooldown_threshold_multiplier <= 1:
            errors.append(
                f"cooldown_threshold_multiplier must be in (0, 1], got {self.cooldown_threshold_multiplier}"
            )

        if self.consecutive_loss_count < 1:
            errors.append(f"consecutive_loss_count must be >= 1, got {self.consecutive_loss_count}")
        if not 1 <= self.cooldown_consecutive_loss_count <= self.consecutive_loss_count:
            errors.append(
                f"cooldown_consecutive_loss_count must be in [1, consecutive_loss_count], "
                f"got {self.cooldown_consecutive_loss_count}"
            )
        if self.max_severity_level < 1:
            errors.append(f"max_severity_level must be >= 1, got {self.max_severity_level}")
        if self.max_opens_per_hour < 1:
            errors.append(f"max_opens_per_hour must be >= 1, got {self.max_opens_per_hour}")

        # Correlation is bounded to [-1, 1]
        if not 0 < self.correlation_threshold < 1:
            errors.append(f"correlation_threshold must be in (0, 1), got {self.correlation_threshold}")
        if self.correlation_min_points < 2:
            errors.append(f"correlation_min_points must be >= 2, got {self.correlation_min_points}")
        if self.correlation_lookback < self.correlation_min_points:
            errors.append(
                f"correlation_lookback must be >= correlation_min_points, got {self.correlation_lookback}"
            )
        if self.correlation_min_returns < 2:
            errors.append(f"correlation_min_returns must be >= 2, got {self.correlation_min_returns}")

        try:
            pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError:
            errors.append(f"timezone is not a known tz name, got {self.timezone!r}")

        if errors:
            raise RiskConfigError(f"Invalid risk configuration: {'; '.join(errors)}")

    @property
    def tz(self):
        """pytz timezone for the daily loss boundary"""
        return pytz.timezone(self.timezone)

    @classmethod
    def load_from_yaml(cls, path: str = "config.yaml") -> "RiskControlConfig":
        """
        Load the 'risk_control' section from a YAML file.

        FAIL CLOSED: Raises RiskConfigError if:
        - File doesn't exist
        - File can't be parsed
        - 'risk_control' section missing
        - Any value is invalid or unknown
        """
        section = load_config_section(path, "risk_control")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(section) - known)
        if unknown:
            raise RiskConfigError(f"Unknown risk_control keys in {path}: {', '.join(unknown)}")

        # Let __post_init__ validate the values
        try:
            return cls(**section)
        except TypeError as e:
            raise RiskConfigError(f"Invalid risk_control structure: {e}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for logging."""
        return asdict(self)


def load_config_section(path: str, section_name: str) -> Dict[str, Any]:
    """Read one top-level mapping out of a YAML config file."""
    config_path = Path(path)

    # FAIL CLOSED: Missing file is an error, not "use defaults"
    if not config_path.exists():
        raise RiskConfigError(
            f"Config file not found: {path}. "
            f"Cannot run without explicit risk configuration."
        )

    try:
        with open(config_path, "r") as f:
            full_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise RiskConfigError(f"Failed to parse config {path}: {e}")

    if full_config is None:
        raise RiskConfigError(f"Config file is empty: {path}")

    section = full_config.get(section_name)
    if section is None:
        raise RiskConfigError(
            f"No '{section_name}' section in config file: {path}. "
            f"This section is required."
        )
    if not isinstance(section, dict):
        raise RiskConfigError(f"'{section_name}' in {path} must be a mapping")

    logger.debug(f"Loaded '{section_name}' from {path}")
    return section
