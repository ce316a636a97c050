#!/usr/bin/env python3
"""
Initialize the PerpGuard Trading Store

Creates the database and applies every pending migration.
Safe to run multiple times - each migration is recorded once applied,
and databases from older deployments are brought up to date.

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --db data/other.db
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.store import LATEST_SCHEMA_VERSION, MIGRATIONS, StoreError, TradingStore

load_dotenv(Path(__file__).parent.parent / ".env")

logging.basicConfig(
    level=os.getenv("PERPGUARD_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "perpguard.db"


async def init_db(db_path: str) -> int:
    store = TradingStore(db_path)
    before = await store.get_schema_version()
    version = await store.initialize()

    print(f"Trading store at: {db_path}")
    print(f"Schema version: v{before} -> v{version} (latest v{LATEST_SCHEMA_VERSION})")
    print()
    print("Migrations:")
    for migration in MIGRATIONS:
        marker = "applied now" if migration.version > before else "already applied"
        print(f"  {migration.version:03d}_{migration.name:<40} {marker}")
    return version


def main():
    parser = argparse.ArgumentParser(description="Create or migrate the PerpGuard database")
    parser.add_argument(
        "--db", type=str,
        default=os.getenv("PERPGUARD_DB_PATH", str(DEFAULT_DB_PATH)),
        help="SQLite database path"
    )
    args = parser.parse_args()

    try:
        asyncio.run(init_db(args.db))
    except StoreError as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
