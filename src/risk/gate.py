"""
Risk Gate - one call before opening any position

Combines the circuit breaker and the three anomaly detectors into a
single approve / warn / block verdict.

Usage:
    gate = RiskGate(breaker, detector)
    result = await gate.comprehensive_risk_check(RiskCheckRequest(
        symbol="BTC", side=PositionSide.LONG, notional=200.0, leverage=10,
        existing_positions=[ExistingPosition("ETH", PositionSide.LONG)],
    ))

    if not result.approved:
        print(f"Blocked: {result.blockers}")
"""

import logging
from datetime import datetime
from typing import List, Optional

from .anomaly import AnomalyDetector
from .circuit_breaker import CircuitBreaker
from .schema import AnomalySeverity, RiskCheckRequest, RiskGateResult

logger = logging.getLogger(__name__)


class RiskGate:
    """
    Position-level gate.

    The breaker status rides along for audit only; halting the whole loop
    is the trading loop's decision, made before it ever asks the gate.
    """

    def __init__(self, circuit_breaker: CircuitBreaker, detector: AnomalyDetector):
        self.circuit_breaker = circuit_breaker
        self.detector = detector

    async def comprehensive_risk_check(
        self,
        request: RiskCheckRequest,
        now: Optional[datetime] = None
    ) -> RiskGateResult:
        """
        Run every check for a proposed position.

        Rules:
        - position anomaly HIGH -> blocker, any other severity -> warning
        - frequency and correlation anomalies -> warnings
        - approved exactly when there are no blockers
        """
        warnings: List[str] = []
        blockers: List[str] = []

        breaker_status = await self.circuit_breaker.check(now)
        if breaker_status.should_halt:
            logger.info(
                f"Circuit breaker active during risk check for {request.symbol}: "
                f"{breaker_status.reason}"
            )

        position = await self.detector.detect_anomalous_position(
            request.symbol, request.notional, request.leverage
        )
        if position.is_anomalous:
            if position.severity == AnomalySeverity.HIGH:
                blockers.append(position.reason)
            else:
                warnings.append(position.reason)

        frequency = await self.detector.detect_frequent_trading(request.symbol, now)
        if frequency.is_anomalous:
            warnings.append(frequency.reason)

        correlation = await self.detector.detect_correlation_risk(
            request.symbol, request.side, request.existing_positions
        )
        if correlation.is_anomalous:
            warnings.append(correlation.reason)

        result = RiskGateResult(
            approved=not blockers,
            warnings=warnings,
            blockers=blockers,
            circuit_breaker=breaker_status,
        )

        if blockers:
            logger.warning(
                f"Risk gate BLOCKED {request.symbol} {request.side.value}: {'; '.join(blockers)}"
            )
        elif warnings:
            logger.info(
                f"Risk gate approved {request.symbol} {request.side.value} "
                f"with {len(warnings)} warning(s): {'; '.join(warnings)}"
            )
        else:
            logger.debug(f"Risk gate approved {request.symbol} {request.side.value}")

        return result
