"""
Risk Control Endpoints
Circuit breaker status, audit trail and operator reset; stop-loss lookup
and the pre-trade risk gate.
"""

import logging
import os
import secrets
from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from src.risk import (
    AnomalyDetector,
    CircuitBreaker,
    ExistingPosition,
    RiskCheckRequest,
    RiskGate,
    get_dynamic_stop_loss,
)
from src.store.schema import PositionSide

logger = logging.getLogger(__name__)

router = APIRouter()

RESET_PASSWORD_ENV = "PERPGUARD_RESET_PASSWORD"


class ResetRequest(BaseModel):
    password: str


class PositionBody(BaseModel):
    symbol: str
    side: Literal["long", "short"]


class RiskCheckBody(BaseModel):
    symbol: str
    side: Literal["long", "short"]
    notional: float = Field(gt=0)
    leverage: float = Field(gt=0)
    existing_positions: List[PositionBody] = []


def get_circuit_breaker(request: Request) -> CircuitBreaker:
    return CircuitBreaker(request.app.state.store, request.app.state.risk_config)


def get_risk_gate(
    request: Request,
    breaker: CircuitBreaker = Depends(get_circuit_breaker)
) -> RiskGate:
    detector = AnomalyDetector(request.app.state.store, request.app.state.risk_config)
    return RiskGate(breaker, detector)


@router.get("/circuit-breaker")
async def get_circuit_breaker_status(breaker: CircuitBreaker = Depends(get_circuit_breaker)):
    """Current breaker state (runs a full check, including auto-resume)."""
    status = await breaker.check()
    return status.to_dict()


@router.get("/circuit-breaker/history")
async def get_circuit_breaker_history(
    limit: int = Query(default=50, ge=1, le=500),
    breaker: CircuitBreaker = Depends(get_circuit_breaker)
):
    """Every breaker record, newest first."""
    records = await breaker.get_history(limit)
    return [record.to_dict() for record in records]


@router.post("/circuit-breaker/reset")
async def reset_circuit_breaker(
    body: ResetRequest,
    request: Request,
    breaker: CircuitBreaker = Depends(get_circuit_breaker)
):
    """
    Operator override. Requires PERPGUARD_RESET_PASSWORD.

    Without the env var set, reset over HTTP is disabled entirely.
    """
    expected = os.getenv(RESET_PASSWORD_ENV)
    if not expected:
        logger.warning(f"Circuit breaker reset refused: {RESET_PASSWORD_ENV} not set")
        raise HTTPException(status_code=403, detail="Reset is disabled")

    # Constant-time comparison to prevent timing attacks
    if not secrets.compare_digest(body.password, expected):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Circuit breaker reset refused: bad password from {client}")
        raise HTTPException(status_code=403, detail="Invalid password")

    success = await breaker.reset()
    return {"success": success}


@router.get("/risk/stop-loss")
async def get_stop_loss(leverage: float = Query(..., gt=0)):
    """Dynamic stop-loss line for a leverage."""
    return {"leverage": leverage, "stop_loss_pct": get_dynamic_stop_loss(leverage)}


@router.post("/risk/check")
async def check_risk(body: RiskCheckBody, gate: RiskGate = Depends(get_risk_gate)):
    """Run the pre-trade risk gate for a proposed position."""
    request = RiskCheckRequest(
        symbol=body.symbol,
        side=PositionSide(body.side),
        notional=body.notional,
        leverage=body.leverage,
        existing_positions=[
            ExistingPosition(symbol=p.symbol, side=PositionSide(p.side))
            for p in body.existing_positions
        ],
    )
    result = await gate.comprehensive_risk_check(request)
    return result.to_dict()
