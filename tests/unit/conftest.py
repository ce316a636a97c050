"""
Shared fixtures for unit tests.
"""

import sys
from pathlib import Path

import pytest_asyncio

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from src.store import TradingStore


@pytest_asyncio.fixture
async def store(tmp_path):
    """Fresh store with every migration applied"""
    store = TradingStore(str(tmp_path / "test_perpguard.db"))
    await store.initialize()
    return store
