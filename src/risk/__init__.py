"""
Risk Control - circuit breaker, anomaly detection and dynamic stop-loss

Every risk answer is a typed result. Nothing in here raises to the
trading loop except configuration loading, which fails closed.

Usage:
    from src.risk import CircuitBreaker, AnomalyDetector, RiskGate, RiskControlConfig

    config = RiskControlConfig.load_from_yaml("config.yaml")
    breaker = CircuitBreaker(store, config)
    gate = RiskGate(breaker, AnomalyDetector(store, config))

    status = await breaker.check()
    if status.should_halt:
        return

    result = await gate.comprehensive_risk_check(request)
    if result.approved:
        ...
"""

from .anomaly import AnomalyDetector
from .circuit_breaker import CircuitBreaker
from .config import RiskConfigError, RiskControlConfig, load_config_section
from .correlation import pearson_correlation, simple_returns
from .gate import RiskGate
from .schema import (
    AnomalyCheck,
    AnomalySeverity,
    CircuitBreakerStatus,
    ExistingPosition,
    RiskCheckRequest,
    RiskGateResult,
)
from .stop_loss import get_dynamic_stop_loss, should_force_close

__all__ = [
    "AnomalyDetector",
    "AnomalyCheck",
    "AnomalySeverity",
    "CircuitBreaker",
    "CircuitBreakerStatus",
    "ExistingPosition",
    "RiskCheckRequest",
    "RiskConfigError",
    "RiskControlConfig",
    "RiskGate",
    "RiskGateResult",
    "get_dynamic_stop_loss",
    "load_config_section",
    "pearson_correlation",
    "should_force_close",
    "simple_returns",
]
