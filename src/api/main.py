"""
PerpGuard Risk API
Read access to the circuit breaker and risk gate, plus the operator reset.

Run: uvicorn src.api.main:app --host 0.0.0.0 --port 8000

Environment:
    - PERPGUARD_DB_PATH: SQLite database (default data/perpguard.db)
    - PERPGUARD_CONFIG: YAML config with a risk_control section (default config.yaml)
    - PERPGUARD_RESET_PASSWORD: required for POST /api/circuit-breaker/reset
    - PERPGUARD_LOG_LEVEL: logging level (default INFO)
"""

# Load environment variables from .env FIRST
from pathlib import Path
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent.parent / ".env")

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from src.risk import RiskControlConfig
from src.store import TradingStore

from .routes import risk

# Paths
BASE_DIR = Path(__file__).parent.parent.parent
DEFAULT_DB_PATH = BASE_DIR / "data" / "perpguard.db"
DEFAULT_CONFIG_PATH = BASE_DIR / "config.yaml"

logging.basicConfig(
    level=os.getenv("PERPGUARD_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)


def create_app(db_path: Optional[str] = None, config_path: Optional[str] = None) -> FastAPI:
    """
    Build the API app.

    The store is migrated and the risk config loaded (fail closed) on
    startup, before the first request is served.
    """
    db_path = db_path or os.getenv("PERPGUARD_DB_PATH", str(DEFAULT_DB_PATH))
    config_path = config_path or os.getenv("PERPGUARD_CONFIG", str(DEFAULT_CONFIG_PATH))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.risk_config = RiskControlConfig.load_from_yaml(config_path)
        app.state.store = TradingStore(db_path)
        await app.state.store.initialize()
        logger.info(f"Risk API ready: db={db_path} config={config_path}")
        yield

    app = FastAPI(
        title="PerpGuard Risk API",
        description="Circuit breaker and pre-trade risk checks",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url=None,
        lifespan=lifespan
    )

    app.include_router(risk.router, prefix="/api", tags=["Risk"])

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "operational", "service": "perpguard-risk"}

    return app


app = create_app()


def run_server():
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host=os.getenv("PERPGUARD_API_HOST", "127.0.0.1"),
        port=int(os.getenv("PERPGUARD_API_PORT", "8000")),
    )
