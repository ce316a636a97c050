#!/usr/bin/env python3
"""
Circuit Breaker Operator Tool

Usage:
    python scripts/circuit_breaker.py status
    python scripts/circuit_breaker.py reset
    python scripts/circuit_breaker.py history --limit 20
    python scripts/circuit_breaker.py stop-loss 12
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.risk import CircuitBreaker, RiskConfigError, RiskControlConfig, get_dynamic_stop_loss
from src.store import TradingStore

load_dotenv(Path(__file__).parent.parent / ".env")

logging.basicConfig(
    level=os.getenv("PERPGUARD_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).parent.parent


async def _breaker(args) -> CircuitBreaker:
    config = RiskControlConfig.load_from_yaml(args.config)
    store = TradingStore(args.db)
    await store.initialize()
    return CircuitBreaker(store, config)


async def cmd_status(args) -> int:
    breaker = await _breaker(args)
    status = await breaker.check()

    if status.should_halt:
        print(f"HALTED: {status.reason}")
        if status.resume_time:
            print(f"  Resumes at: {status.resume_time.isoformat()}")
        print(f"  Severity:   {status.severity_level}")
    else:
        print("Trading allowed")
        if status.is_in_cooldown:
            print(f"  Cooldown until {status.cooldown_until.isoformat()} (thresholds tightened)")
        print(f"  Severity:   {status.severity_level}")

    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
    return 0


async def cmd_reset(args) -> int:
    breaker = await _breaker(args)
    active = await breaker.get_active_record()
    if active is None:
        print("No active circuit breaker")

    if not await breaker.reset():
        print("Reset FAILED - see log")
        return 1

    if active is not None:
        print(f"Reset circuit breaker #{active.id}: {active.reason}")
    return 0


async def cmd_history(args) -> int:
    breaker = await _breaker(args)
    records = await breaker.get_history(args.limit)
    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return 0

    if not records:
        print("No circuit breaker records")
        return 0

    for record in records:
        triggered = record.triggered_at.isoformat() if record.triggered_at else "?"
        trigger = record.trigger_type.value if record.trigger_type else "unknown"
        print(
            f"#{record.id:<5} {record.status.value:<15} sev {record.severity_level} "
            f"{trigger:<18} {triggered} -> {record.resume_at_raw}"
        )
        print(f"       {record.reason}")
    return 0


def cmd_stop_loss(args) -> int:
    print(f"{args.leverage:g}x leverage -> stop-loss {get_dynamic_stop_loss(args.leverage):g}%")
    return 0


def main():
    parser = argparse.ArgumentParser(description="PerpGuard circuit breaker operator tool")
    parser.add_argument(
        "--db", type=str,
        default=os.getenv("PERPGUARD_DB_PATH", str(BASE_DIR / "data" / "perpguard.db")),
        help="SQLite database path"
    )
    parser.add_argument(
        "--config", type=str,
        default=os.getenv("PERPGUARD_CONFIG", str(BASE_DIR / "config.yaml")),
        help="YAML config with a risk_control section"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Run a breaker check and show the result")
    status.add_argument("--json", action="store_true", help="Also print the status as JSON")

    subparsers.add_parser("reset", help="Manually clear the active breaker")

    history = subparsers.add_parser("history", help="Show the breaker audit trail")
    history.add_argument("--limit", type=int, default=20, help="Records to show (default: 20)")
    history.add_argument("--json", action="store_true", help="Print as JSON")

    stop_loss = subparsers.add_parser("stop-loss", help="Dynamic stop-loss for a leverage")
    stop_loss.add_argument("leverage", type=float)

    args = parser.parse_args()

    if args.command == "stop-loss":
        sys.exit(cmd_stop_loss(args))

    commands = {
        "status": cmd_status,
        "reset": cmd_reset,
        "history": cmd_history,
    }
    try:
        sys.exit(asyncio.run(commands[args.command](args)))
    except RiskConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
