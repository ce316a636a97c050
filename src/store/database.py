"""
Trading Store - Async persistence for the risk layer

Every read the circuit breaker and anomaly detectors make goes through
here, and so does every write the trading loop makes.

Usage:
    store = TradingStore("data/perpguard.db")
    await store.initialize()  # Applies pending migrations

    # Trading loop writes
    await store.record_account_snapshot(AccountSnapshot(total_value=1000.0, timestamp=now))
    await store.record_trade(TradeRecord(symbol="BTC", side=PositionSide.LONG,
                                         type=TradeType.CLOSE, pnl=-12.5, timestamp=now))

    # Risk layer reads
    balance = await store.get_latest_balance()
    active = await store.get_active_breaker()
"""

import aiosqlite
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .schema import (
    MIGRATIONS,
    MIGRATIONS_TABLE,
    AccountSnapshot,
    BreakerStatus,
    CircuitBreakerRecord,
    Migration,
    TradeRecord,
    TradingSessionRecord,
    TriggerType,
    parse_db_timestamp,
    to_db_timestamp,
)


logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the store cannot be brought into a usable state."""
    pass


class TradingStore:
    """
    Asynchronous aiosqlite store for trades, balances, signals and
    circuit breaker records.

    Each public method opens its own connection; writes commit when the
    method returns and roll back on any error.
    """

    def __init__(self, db_path: str):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def _get_connection(self):
        """Async context manager for database connections"""
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            try:
                yield db
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(f"Database error: {e}")
                raise

    # =========================================================================
    # SCHEMA
    # =========================================================================

    async def initialize(self) -> int:
        """
        Enable WAL mode and apply every pending migration.

        Safe to call on every startup. Returns the resulting schema version.
        """
        try:
            async with self._get_connection() as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                await db.execute(MIGRATIONS_TABLE)

                cursor = await db.execute("SELECT version FROM schema_migrations")
                applied = {row["version"] for row in await cursor.fetchall()}

                for migration in sorted(MIGRATIONS, key=lambda m: m.version):
                    if migration.version in applied:
                        continue
                    await self._apply_migration(db, migration)
                    await db.commit()
                    logger.info(
                        f"Applied migration {migration.version:03d}_{migration.name}"
                    )

                version = max(applied | {m.version for m in MIGRATIONS})
        except aiosqlite.Error as e:
            raise StoreError(f"Failed to migrate {self.db_path}: {e}") from e

        logger.info(f"Trading store ready (schema v{version}) at {self.db_path}")
        return version

    async def _apply_migration(self, db: aiosqlite.Connection, migration: Migration) -> None:
        for table, column, declaration in migration.add_columns:
            if await self._column_exists(db, table, column):
                logger.debug(f"Column {table}.{column} already present, skipping")
                continue
            await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration}")

        for statement in migration.statements:
            await db.execute(statement)

        for table, columns in migration.rewrite_timestamps:
            await self._rewrite_timestamps(db, table, columns)

        await db.execute(
            "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
            (migration.version, migration.name, to_db_timestamp(datetime.now(timezone.utc)))
        )

    @staticmethod
    async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
        cursor = await db.execute(f"PRAGMA table_info({table})")
        return any(row[1] == column for row in await cursor.fetchall())

    @staticmethod
    async def _rewrite_timestamps(db: aiosqlite.Connection, table: str,
                                  columns: Tuple[str, ...]) -> None:
        """Rewrite TEXT timestamps in place so lexical order is UTC order"""
        cursor = await db.execute(f"SELECT id, {', '.join(columns)} FROM {table}")
        rewritten = 0
        for row in await cursor.fetchall():
            updates = {}
            for column in columns:
                raw = row[column]
                if raw is None:
                    continue
                try:
                    normalized = to_db_timestamp(parse_db_timestamp(raw))
                except ValueError:
                    logger.warning(
                        f"{table}.{column} id={row['id']} has unparsable timestamp {raw!r}, left as is"
                    )
                    continue
                if normalized != raw:
                    updates[column] = normalized

            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                await db.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",
                    (*updates.values(), row["id"])
                )
                rewritten += 1

        if rewritten:
            logger.info(f"Normalized timestamps on {rewritten} {table} rows")

    async def get_schema_version(self) -> int:
        """Highest applied migration version (0 for an empty database)"""
        async with self._get_connection() as db:
            await db.execute(MIGRATIONS_TABLE)
            cursor = await db.execute("SELECT MAX(version) AS version FROM schema_migrations")
            row = await cursor.fetchone()
            return int(row["version"] or 0)

    # =========================================================================
    # CIRCUIT BREAKER RECORDS
    # =========================================================================

    async def get_active_breaker(self) -> Optional[CircuitBreakerRecord]:
        """The newest active record, if any"""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT * FROM circuit_breaker_log
                WHERE status = 'active'
                ORDER BY triggered_at DESC, id DESC LIMIT 1
            """)
            row = await cursor.fetchone()
            return CircuitBreakerRecord.from_row(row) if row else None

    async def expire_active_breakers(self) -> int:
        """Demote every active record to expired. Returns rows changed."""
        async with self._get_connection() as db:
            cursor = await db.execute(
                "UPDATE circuit_breaker_log SET status = ? WHERE status = 'active'",
                (BreakerStatus.EXPIRED.value,)
            )
            return cursor.rowcount

    async def record_circuit_breaker(
        self,
        reason: str,
        triggered_at: datetime,
        resume_at: datetime,
        severity_level: int,
        cooldown_until: datetime,
        trigger_type: TriggerType,
        trigger_details: Dict[str, Any]
    ) -> int:
        """
        Demote any active record and insert a new active one atomically.

        Both statements run inside one IMMEDIATE transaction, so concurrent
        writers are serialized. The unique partial index on status='active'
        backs this up: any insert that bypasses the demotion raises
        aiosqlite.IntegrityError.

        Returns the new record id.
        """
        async with self._get_connection() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "UPDATE circuit_breaker_log SET status = ? WHERE status = 'active'",
                (BreakerStatus.EXPIRED.value,)
            )
            if cursor.rowcount > 0:
                logger.info(f"Demoted {cursor.rowcount} active breaker record(s) to expired")

            cursor = await db.execute("""
                INSERT INTO circuit_breaker_log (
                    reason, triggered_at, resume_at, status,
                    severity_level, cooldown_until, trigger_type, trigger_details
                ) VALUES (?, ?, ?, 'active', ?, ?, ?, ?)
            """, (
                reason,
                to_db_timestamp(triggered_at),
                to_db_timestamp(resume_at),
                severity_level,
                to_db_timestamp(cooldown_until),
                trigger_type.value,
                json.dumps(trigger_details)
            ))
            record_id = cursor.lastrowid

        logger.info(
            f"Circuit breaker #{record_id} recorded: {trigger_type.value} "
            f"(severity {severity_level}) until {to_db_timestamp(resume_at)}"
        )
        return record_id

    async def reset_active_breakers(self, reset_at: datetime) -> int:
        """Mark every active record manually_reset. Returns rows changed."""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                UPDATE circuit_breaker_log SET status = ?, reset_at = ?
                WHERE status = 'active'
            """, (BreakerStatus.MANUALLY_RESET.value, to_db_timestamp(reset_at)))
            return cursor.rowcount

    async def get_latest_cooldown_record(self) -> Optional[CircuitBreakerRecord]:
        """Newest finished record that carries a cooldown window"""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT * FROM circuit_breaker_log
                WHERE status IN ('expired', 'manually_reset')
                AND cooldown_until IS NOT NULL
                ORDER BY triggered_at DESC, id DESC LIMIT 1
            """)
            row = await cursor.fetchone()
            return CircuitBreakerRecord.from_row(row) if row else None

    async def get_trigger_stats(self, since: datetime) -> Tuple[int, int]:
        """
        (trigger count, highest severity) for records triggered since `since`.

        Highest severity is 1 when there are no records.
        """
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT COUNT(*) AS count, MAX(severity_level) AS max_level
                FROM circuit_breaker_log
                WHERE triggered_at >= ?
            """, (to_db_timestamp(since),))
            row = await cursor.fetchone()
            return int(row["count"] or 0), int(row["max_level"] or 1)

    async def get_latest_manual_reset(self, since: datetime) -> Optional[CircuitBreakerRecord]:
        """
        Newest manually reset record whose reset happened since `since`.

        Legacy rows without reset_at fall back to triggered_at.
        """
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT * FROM circuit_breaker_log
                WHERE status = 'manually_reset'
                AND COALESCE(reset_at, triggered_at) >= ?
                ORDER BY COALESCE(reset_at, triggered_at) DESC LIMIT 1
            """, (to_db_timestamp(since),))
            row = await cursor.fetchone()
            return CircuitBreakerRecord.from_row(row) if row else None

    async def get_recent_expiry(
        self,
        since: datetime,
        until: datetime
    ) -> Optional[CircuitBreakerRecord]:
        """Newest expired record whose resume_at falls in [since, until]"""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT * FROM circuit_breaker_log
                WHERE status = 'expired'
                AND resume_at >= ? AND resume_at <= ?
                ORDER BY resume_at DESC LIMIT 1
            """, (to_db_timestamp(since), to_db_timestamp(until)))
            row = await cursor.fetchone()
            return CircuitBreakerRecord.from_row(row) if row else None

    async def count_active_breakers(self) -> int:
        async with self._get_connection() as db:
            cursor = await db.execute(
                "SELECT COUNT(*) AS count FROM circuit_breaker_log WHERE status = 'active'"
            )
            row = await cursor.fetchone()
            return int(row["count"])

    async def get_breaker_history(self, limit: int = 50) -> List[CircuitBreakerRecord]:
        """Most recent records first, every status"""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT * FROM circuit_breaker_log
                ORDER BY triggered_at DESC, id DESC LIMIT ?
            """, (limit,))
            rows = await cursor.fetchall()
            return [CircuitBreakerRecord.from_row(row) for row in rows]

    # =========================================================================
    # TRADES
    # =========================================================================

    async def record_trade(self, trade: TradeRecord) -> int:
        """Insert a trade row. Returns its id."""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                INSERT INTO trades (
                    order_id, symbol, side, type, price, quantity,
                    leverage, pnl, fee, timestamp, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                trade.order_id,
                trade.symbol,
                trade.side.value,
                trade.type.value,
                trade.price,
                trade.quantity,
                trade.leverage,
                trade.pnl,
                trade.fee,
                to_db_timestamp(trade.timestamp),
                trade.status
            ))
            trade.id = cursor.lastrowid

        logger.debug(
            f"Trade recorded: {trade.type.value} {trade.symbol} {trade.side.value} "
            f"pnl={trade.pnl}"
        )
        return trade.id

    async def sum_closed_pnl_since(self, since: datetime) -> float:
        """Sum of pnl over close trades at or after `since` (0.0 if none)"""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT SUM(pnl) AS total_pnl FROM trades
                WHERE type = 'close' AND timestamp >= ?
            """, (to_db_timestamp(since),))
            row = await cursor.fetchone()
            return float(row["total_pnl"] or 0.0)

    async def get_recent_closed_trades(self, limit: int) -> List[TradeRecord]:
        """Newest close trades first"""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT * FROM trades WHERE type = 'close'
                ORDER BY timestamp DESC, id DESC LIMIT ?
            """, (limit,))
            rows = await cursor.fetchall()
            return [TradeRecord.from_row(row) for row in rows]

    async def count_opens_since(self, symbol: str, since: datetime) -> int:
        """Open trades for `symbol` at or after `since`"""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT COUNT(*) AS count FROM trades
                WHERE symbol = ? AND type = 'open' AND timestamp >= ?
            """, (symbol, to_db_timestamp(since)))
            row = await cursor.fetchone()
            return int(row["count"] or 0)

    # =========================================================================
    # ACCOUNT SNAPSHOTS
    # =========================================================================

    async def record_account_snapshot(self, snapshot: AccountSnapshot) -> None:
        async with self._get_connection() as db:
            await db.execute("""
                INSERT INTO account_history (
                    total_value, available_balance, unrealised_pnl, timestamp
                ) VALUES (?, ?, ?, ?)
            """, (
                snapshot.total_value,
                snapshot.available_balance,
                snapshot.unrealised_pnl,
                to_db_timestamp(snapshot.timestamp)
            ))

    async def get_latest_balance(self) -> Optional[float]:
        """total_value of the newest snapshot, None with no history"""
        async with self._get_connection() as db:
            cursor = await db.execute(
                "SELECT total_value FROM account_history ORDER BY timestamp DESC, id DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            if row is None or row["total_value"] is None:
                return None
            return float(row["total_value"])

    # =========================================================================
    # SIGNALS
    # =========================================================================

    async def record_signal(
        self,
        symbol: str,
        price: float,
        timestamp: datetime,
        indicators: Optional[Dict[str, float]] = None
    ) -> None:
        indicators = indicators or {}
        async with self._get_connection() as db:
            await db.execute("""
                INSERT INTO trading_signals (
                    symbol, timestamp, price, ema_20, ema_50,
                    macd, rsi_7, rsi_14, volume
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                symbol,
                to_db_timestamp(timestamp),
                price,
                indicators.get("ema20"),
                indicators.get("ema50"),
                indicators.get("macd"),
                indicators.get("rsi7"),
                indicators.get("rsi14"),
                indicators.get("volume")
            ))

    async def get_recent_prices(self, symbol: str, limit: int = 100) -> List[float]:
        """Newest `limit` signal prices for `symbol`, NEWEST FIRST"""
        async with self._get_connection() as db:
            cursor = await db.execute("""
                SELECT price FROM trading_signals
                WHERE symbol = ?
                ORDER BY timestamp DESC, id DESC LIMIT ?
            """, (symbol, limit))
            rows = await cursor.fetchall()
            return [float(row["price"]) for row in rows]

    # =========================================================================
    # TRADING SESSIONS
    # =========================================================================

    async def load_or_create_session(self, now: datetime) -> TradingSessionRecord:
        """Resume the newest session row, or start one at `now`"""
        async with self._get_connection() as db:
            cursor = await db.execute(
                "SELECT * FROM trading_sessions ORDER BY id DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            if row:
                return TradingSessionRecord(
                    id=row["id"],
                    started_at=parse_db_timestamp(row["started_at"]),
                    iteration_count=int(row["iteration_count"] or 0),
                    last_iteration_at=(
                        parse_db_timestamp(row["last_iteration_at"])
                        if row["last_iteration_at"] else None
                    ),
                )

            cursor = await db.execute(
                "INSERT INTO trading_sessions (started_at, iteration_count) VALUES (?, 0)",
                (to_db_timestamp(now),)
            )
            logger.info(f"Started trading session #{cursor.lastrowid}")
            return TradingSessionRecord(
                id=cursor.lastrowid,
                started_at=now,
                iteration_count=0,
            )

    async def save_session_progress(
        self,
        session_id: int,
        iteration_count: int,
        last_iteration_at: datetime
    ) -> None:
        async with self._get_connection() as db:
            await db.execute("""
                UPDATE trading_sessions
                SET iteration_count = ?, last_iteration_at = ?
                WHERE id = ?
            """, (iteration_count, to_db_timestamp(last_iteration_at), session_id))

    async def start_new_session(self, now: datetime) -> TradingSessionRecord:
        """Begin a fresh session (iteration count back to zero)"""
        async with self._get_connection() as db:
            cursor = await db.execute(
                "INSERT INTO trading_sessions (started_at, iteration_count) VALUES (?, 0)",
                (to_db_timestamp(now),)
            )
            return TradingSessionRecord(id=cursor.lastrowid, started_at=now, iteration_count=0)
