"""
Risk Control Schema - Observable Risk Results

Every risk answer is a typed object, never a bare bool:
- AnomalyCheck: one detector's verdict and why
- CircuitBreakerStatus: halt or not, until when, how severe
- RiskGateResult: approve / warn / block for a proposed position

None of the risk operations raise to their caller; they always hand back
one of these.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.store.schema import PositionSide, TriggerType


class AnomalySeverity(Enum):
    """How bad an anomaly is. HIGH position anomalies block trades."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class AnomalyCheck:
    """
    Result of one anomaly detector.

    Example:
        AnomalyCheck(
            is_anomalous=True,
            severity=AnomalySeverity.HIGH,
            reason="Single position too large: 60.0% of account exceeds 50%"
        )
    """
    is_anomalous: bool
    severity: AnomalySeverity = AnomalySeverity.LOW
    reason: Optional[str] = None

    @classmethod
    def clear(cls) -> "AnomalyCheck":
        """Nothing unusual found (also the fail-open default)."""
        return cls(is_anomalous=False, severity=AnomalySeverity.LOW)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_anomalous": self.is_anomalous,
            "severity": self.severity.value,
            "reason": self.reason,
        }


@dataclass
class CircuitBreakerStatus:
    """
    Answer to "may the trading loop run a decision cycle right now?"

    should_halt=True means skip the cycle entirely. When not halted the
    cooldown fields still tell the caller that thresholds are tightened.
    """
    should_halt: bool
    reason: Optional[str] = None
    resume_time: Optional[datetime] = None
    severity_level: Optional[int] = None
    is_in_cooldown: bool = False
    cooldown_until: Optional[datetime] = None
    trigger_type: Optional[TriggerType] = None

    def minutes_remaining(self, now: datetime) -> Optional[int]:
        """Whole minutes until resume_time, rounded up"""
        if self.resume_time is None:
            return None
        seconds = (self.resume_time - now).total_seconds()
        return max(0, math.ceil(seconds / 60))

    def to_dict(self) -> Dict[str, Any]:
        """Shape served by the API and CLI"""
        return {
            "is_active": self.should_halt,
            "reason": self.reason,
            "resume_time": self.resume_time.isoformat() if self.resume_time else None,
            "severity_level": self.severity_level,
            "is_in_cooldown": self.is_in_cooldown,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "trigger_type": self.trigger_type.value if self.trigger_type else None,
        }


@dataclass
class ExistingPosition:
    """An open position the correlation check compares against"""
    symbol: str
    side: PositionSide

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExistingPosition":
        return cls(symbol=data["symbol"], side=PositionSide(data["side"]))


@dataclass
class RiskCheckRequest:
    """
    Input to the risk gate - what position are we about to open?

    notional is the quote-currency value before leverage.
    """
    symbol: str
    side: PositionSide
    notional: float
    leverage: float
    existing_positions: List[ExistingPosition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "notional": self.notional,
            "leverage": self.leverage,
            "existing_positions": [
                {"symbol": p.symbol, "side": p.side.value}
                for p in self.existing_positions
            ],
        }


@dataclass
class RiskGateResult:
    """
    The combined verdict.

    approved is False exactly when there is at least one blocker.
    Warnings never block; they ride along for logging and the agent.
    """
    approved: bool
    warnings: List[str] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)
    circuit_breaker: Optional[CircuitBreakerStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "warnings": list(self.warnings),
            "blockers": list(self.blockers),
            "circuit_breaker": self.circuit_breaker.to_dict() if self.circuit_breaker else None,
        }
