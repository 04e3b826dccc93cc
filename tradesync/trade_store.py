"""
Trade Store
Persists credential records and normalized trades per identity
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import asyncpg

from .errors import StorageError
from .models import CredentialRecord, NormalizedTrade, TradeHistoryKind, TradeSide

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradeStore(ABC):
    """
    Storage contract for credential records and cached trades

    Invariants:
    - one credential record per identity (upsert)
    - trade_id unique per identity and history kind; first write wins unless
      overwrite_existing_trades is set
    - backend failures raise StorageError
    """

    def __init__(self, purge_trades_on_disconnect: bool = True, overwrite_existing_trades: bool = False):
        self.purge_trades_on_disconnect = purge_trades_on_disconnect
        self.overwrite_existing_trades = overwrite_existing_trades

    async def initialize(self) -> None:
        """Prepare connections and schema"""

    async def close(self) -> None:
        """Release connections"""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def upsert_credentials(self, identity: str, encrypted_key: str, encrypted_secret: str,
                                 fingerprint: str) -> CredentialRecord:
        ...

    @abstractmethod
    async def get_credentials(self, identity: str) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    async def exists_by_fingerprint(self, fingerprint: str, exclude_identity: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    async def disconnect(self, identity: str) -> None:
        ...

    @abstractmethod
    async def upsert_trades(self, identity: str, trades: List[NormalizedTrade]) -> int:
        """Upsert trades by (kind, trade_id). Returns the number of newly inserted trades."""

    @abstractmethod
    async def list_trades(self, identity: str, limit: int,
                          kind: TradeHistoryKind = TradeHistoryKind.EXECUTIONS) -> List[NormalizedTrade]:
        """Persisted trades of one history kind, most recent first"""


# ============================================================
# IN-MEMORY BACKEND
# ============================================================

class InMemoryTradeStore(TradeStore):
    """Process-local store for dev mode and tests"""

    def __init__(self, purge_trades_on_disconnect: bool = True, overwrite_existing_trades: bool = False):
        super().__init__(purge_trades_on_disconnect, overwrite_existing_trades)
        self._accounts: Dict[str, CredentialRecord] = {}
        self._trades: Dict[str, Dict[Tuple[TradeHistoryKind, str], NormalizedTrade]] = {}

    async def ping(self) -> bool:
        return True

    async def upsert_credentials(self, identity: str, encrypted_key: str, encrypted_secret: str,
                                 fingerprint: str) -> CredentialRecord:
        now = utcnow()
        existing = self._accounts.get(identity)
        connected_at = existing.connected_at if existing and existing.is_connected else now
        record = CredentialRecord(
            identity=identity,
            encrypted_api_key=encrypted_key,
            encrypted_api_secret=encrypted_secret,
            fingerprint_hash=fingerprint,
            is_connected=True,
            connected_at=connected_at,
            last_synced_at=existing.last_synced_at if existing else None,
        )
        self._accounts[identity] = record
        return record.model_copy()

    async def get_credentials(self, identity: str) -> Optional[CredentialRecord]:
        record = self._accounts.get(identity)
        return record.model_copy() if record else None

    async def exists_by_fingerprint(self, fingerprint: str, exclude_identity: Optional[str] = None) -> bool:
        return any(
            record.is_connected and record.fingerprint_hash == fingerprint and identity != exclude_identity
            for identity, record in self._accounts.items()
        )

    async def disconnect(self, identity: str) -> None:
        record = self._accounts.get(identity)
        if record:
            self._accounts[identity] = record.model_copy(update={
                "encrypted_api_key": None,
                "encrypted_api_secret": None,
                "fingerprint_hash": None,
                "is_connected": False,
            })
        if self.purge_trades_on_disconnect:
            self._trades.pop(identity, None)

    async def upsert_trades(self, identity: str, trades: List[NormalizedTrade]) -> int:
        stored = self._trades.setdefault(identity, {})
        inserted = 0
        for trade in trades:
            key = (trade.kind, trade.trade_id)
            if key not in stored:
                inserted += 1
            elif not self.overwrite_existing_trades:
                continue
            stored[key] = trade.model_copy()
        record = self._accounts.get(identity)
        if record:
            self._accounts[identity] = record.model_copy(update={"last_synced_at": utcnow()})
        return inserted

    async def list_trades(self, identity: str, limit: int,
                          kind: TradeHistoryKind = TradeHistoryKind.EXECUTIONS) -> List[NormalizedTrade]:
        trades = sorted(
            (trade for trade in self._trades.get(identity, {}).values() if trade.kind is kind),
            key=lambda t: (t.executed_at, t.trade_id),
            reverse=True,
        )
        return [trade.model_copy() for trade in trades[:max(limit, 0)]]


# ============================================================
# POSTGRES BACKEND
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS exchange_accounts (
    identity TEXT PRIMARY KEY,
    encrypted_api_key TEXT,
    encrypted_api_secret TEXT,
    fingerprint_hash TEXT,
    is_connected BOOLEAN NOT NULL DEFAULT FALSE,
    connected_at TIMESTAMPTZ,
    last_synced_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_exchange_accounts_fingerprint
    ON exchange_accounts (fingerprint_hash) WHERE is_connected;

CREATE TABLE IF NOT EXISTS exchange_trades (
    identity TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'executions' CHECK (kind IN ('executions', 'closed_pnl')),
    trade_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL CHECK (side IN ('Buy', 'Sell')),
    price NUMERIC NOT NULL,
    quantity NUMERIC NOT NULL,
    executed_at TIMESTAMPTZ NOT NULL,
    order_id TEXT,
    category TEXT NOT NULL,
    fee NUMERIC NOT NULL DEFAULT 0,
    pnl NUMERIC NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (identity, kind, trade_id)
);
CREATE INDEX IF NOT EXISTS idx_exchange_trades_recent
    ON exchange_trades (identity, kind, executed_at DESC);
"""

ACCOUNT_COLUMNS = (
    "identity, encrypted_api_key, encrypted_api_secret, fingerprint_hash, "
    "is_connected, connected_at, last_synced_at"
)

TRADE_COLUMNS = "kind, trade_id, symbol, side, price, quantity, executed_at, order_id, category, fee, pnl"

TRADE_OVERWRITE = """DO UPDATE SET
                        symbol = EXCLUDED.symbol,
                        side = EXCLUDED.side,
                        price = EXCLUDED.price,
                        quantity = EXCLUDED.quantity,
                        executed_at = EXCLUDED.executed_at,
                        order_id = EXCLUDED.order_id,
                        category = EXCLUDED.category,
                        fee = EXCLUDED.fee,
                        pnl = EXCLUDED.pnl"""


def _record_from_row(row) -> CredentialRecord:
    return CredentialRecord(**{key: row[key] for key in (
        "identity", "encrypted_api_key", "encrypted_api_secret", "fingerprint_hash",
        "is_connected", "connected_at", "last_synced_at",
    )})


def _trade_from_row(row) -> NormalizedTrade:
    return NormalizedTrade(
        trade_id=row["trade_id"],
        symbol=row["symbol"],
        side=TradeSide(row["side"]),
        price=row["price"],
        quantity=row["quantity"],
        executed_at=row["executed_at"],
        order_id=row["order_id"],
        category=row["category"],
        fee=row["fee"],
        pnl=row["pnl"],
        kind=TradeHistoryKind(row["kind"]),
    )


class PostgresTradeStore(TradeStore):
    """
    PostgreSQL backend on an asyncpg pool

    Features:
    - Single-statement upserts (ON CONFLICT), atomic per row
    - No cross-table transaction between credential and trade writes
    """

    def __init__(self, database_url: str, purge_trades_on_disconnect: bool = True,
                 overwrite_existing_trades: bool = False, min_size: int = 1, max_size: int = 10, pool=None):
        """
        Initialize the Postgres store

        Args:
            database_url: PostgreSQL connection URL
            purge_trades_on_disconnect: Delete cached trades when an account is disconnected
            overwrite_existing_trades: Let re-ingested trades overwrite stored mutable fields
            min_size: Minimum pool size
            max_size: Maximum pool size
            pool: Existing asyncpg pool (skips pool creation in initialize)
        """
        super().__init__(purge_trades_on_disconnect, overwrite_existing_trades)
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool = pool

    async def initialize(self) -> None:
        """Create the connection pool and apply the schema"""
        try:
            if self.pool is None:
                self.pool = await asyncpg.create_pool(
                    self.database_url, min_size=self.min_size, max_size=self.max_size
                )
            await self.apply_schema()
            logger.info("✅ Trade store connected to database")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"❌ Failed to initialize trade store: {e}")
            raise

    async def apply_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            logger.info("✅ Trade store database connection closed")

    @asynccontextmanager
    async def _connection(self):
        """Pool connection; driver and network failures surface as StorageError"""
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"❌ Trade store query failed: {type(e).__name__}")
            raise StorageError(f"Trade store query failed: {type(e).__name__}") from e

    async def ping(self) -> bool:
        try:
            async with self._connection() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except StorageError as e:
            logger.warning(f"Trade store ping failed: {e.message}")
            return False

    async def upsert_credentials(self, identity: str, encrypted_key: str, encrypted_secret: str,
                                 fingerprint: str) -> CredentialRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO exchange_accounts (
                    identity, encrypted_api_key, encrypted_api_secret, fingerprint_hash,
                    is_connected, connected_at, updated_at
                ) VALUES ($1, $2, $3, $4, TRUE, $5, $5)
                ON CONFLICT (identity) DO UPDATE SET
                    encrypted_api_key = EXCLUDED.encrypted_api_key,
                    encrypted_api_secret = EXCLUDED.encrypted_api_secret,
                    fingerprint_hash = EXCLUDED.fingerprint_hash,
                    connected_at = CASE WHEN exchange_accounts.is_connected
                                        THEN exchange_accounts.connected_at
                                        ELSE EXCLUDED.connected_at END,
                    is_connected = TRUE,
                    updated_at = EXCLUDED.updated_at
                RETURNING {ACCOUNT_COLUMNS}
                """,
                identity, encrypted_key, encrypted_secret, fingerprint, utcnow()
            )
        logger.debug(f"📝 Upserted credentials for {identity}")
        return _record_from_row(row)

    async def get_credentials(self, identity: str) -> Optional[CredentialRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {ACCOUNT_COLUMNS} FROM exchange_accounts WHERE identity = $1",
                identity
            )
        return _record_from_row(row) if row else None

    async def exists_by_fingerprint(self, fingerprint: str, exclude_identity: Optional[str] = None) -> bool:
        async with self._connection() as conn:
            exists = await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM exchange_accounts
                    WHERE fingerprint_hash = $1
                      AND is_connected
                      AND ($2::text IS NULL OR identity <> $2::text)
                )
                """,
                fingerprint, exclude_identity
            )
        return bool(exists)

    async def disconnect(self, identity: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE exchange_accounts SET
                    encrypted_api_key = NULL,
                    encrypted_api_secret = NULL,
                    fingerprint_hash = NULL,
                    is_connected = FALSE,
                    updated_at = $2
                WHERE identity = $1
                """,
                identity, utcnow()
            )
            if self.purge_trades_on_disconnect:
                await conn.execute("DELETE FROM exchange_trades WHERE identity = $1", identity)
        logger.info(f"🔌 Disconnected {identity} (purge_trades={self.purge_trades_on_disconnect})")

    async def upsert_trades(self, identity: str, trades: List[NormalizedTrade]) -> int:
        conflict_action = TRADE_OVERWRITE if self.overwrite_existing_trades else "DO NOTHING"
        inserted = 0
        async with self._connection() as conn:
            for trade in trades:
                # xmax = 0 only for rows created by this statement; DO NOTHING returns no row
                created = await conn.fetchval(
                    f"""
                    INSERT INTO exchange_trades (identity, {TRADE_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (identity, kind, trade_id) {conflict_action}
                    RETURNING (xmax = 0)
                    """,
                    identity, trade.kind.value, trade.trade_id, trade.symbol, trade.side.value, trade.price,
                    trade.quantity, trade.executed_at, trade.order_id, trade.category,
                    trade.fee, trade.pnl
                )
                if created:
                    inserted += 1
            await conn.execute(
                "UPDATE exchange_accounts SET last_synced_at = $2 WHERE identity = $1",
                identity, utcnow()
            )
        logger.debug(f"📝 Upserted {len(trades)} trades for {identity} ({inserted} new)")
        return inserted

    async def list_trades(self, identity: str, limit: int,
                          kind: TradeHistoryKind = TradeHistoryKind.EXECUTIONS) -> List[NormalizedTrade]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {TRADE_COLUMNS} FROM exchange_trades
                WHERE identity = $1 AND kind = $2
                ORDER BY executed_at DESC, trade_id DESC
                LIMIT $3
                """,
                identity, kind.value, max(limit, 0)
            )
        return [_trade_from_row(row) for row in rows]
