"""
Unit tests for the trade stores
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradesync.errors import StorageError
from tradesync.models import CredentialRecord, NormalizedTrade, TradeHistoryKind, TradeSide
from tradesync.trade_store import InMemoryTradeStore, PostgresTradeStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_trade(trade_id: str, minutes: int = 0, price: str = "100",
               kind: TradeHistoryKind = TradeHistoryKind.EXECUTIONS) -> NormalizedTrade:
    return NormalizedTrade(
        trade_id=trade_id,
        symbol="BTCUSDT",
        side=TradeSide.BUY,
        price=Decimal(price),
        quantity=Decimal("1"),
        executed_at=BASE_TIME + timedelta(minutes=minutes),
        order_id=f"order-{trade_id}",
        category="spot",
        kind=kind,
    )


# ============================================================
# IN-MEMORY STORE
# ============================================================

class TestInMemoryCredentials:
    @pytest.mark.asyncio
    async def test_upsert_creates_connected_record(self, store):
        record = await store.upsert_credentials("user-1", "enc-key", "enc-secret", "fp-1")
        assert record.is_connected
        assert record.connected_at is not None
        assert record.last_synced_at is None
        assert await store.get_credentials("user-1") == record

    @pytest.mark.asyncio
    async def test_reconnect_overwrites_and_keeps_connected_at(self, store):
        first = await store.upsert_credentials("user-1", "enc-key", "enc-secret", "fp-1")
        second = await store.upsert_credentials("user-1", "enc-key-2", "enc-secret-2", "fp-2")
        assert second.encrypted_api_key == "enc-key-2"
        assert second.fingerprint_hash == "fp-2"
        assert second.connected_at == first.connected_at
        assert len(store._accounts) == 1

    @pytest.mark.asyncio
    async def test_reconnect_after_disconnect_resets_connected_at(self, store):
        first = await store.upsert_credentials("user-1", "enc-key", "enc-secret", "fp-1")
        await store.disconnect("user-1")
        second = await store.upsert_credentials("user-1", "enc-key", "enc-secret", "fp-1")
        assert second.connected_at >= first.connected_at
        assert second.is_connected

    @pytest.mark.asyncio
    async def test_get_missing_identity(self, store):
        assert await store.get_credentials("nobody") is None

    @pytest.mark.asyncio
    async def test_exists_by_fingerprint(self, store):
        await store.upsert_credentials("user-1", "enc-key", "enc-secret", "fp-1")
        assert await store.exists_by_fingerprint("fp-1")
        assert not await store.exists_by_fingerprint("fp-1", exclude_identity="user-1")
        assert await store.exists_by_fingerprint("fp-1", exclude_identity="user-2")
        assert not await store.exists_by_fingerprint("fp-other")

    @pytest.mark.asyncio
    async def test_disconnected_record_does_not_count_as_duplicate(self, store):
        await store.upsert_credentials("user-1", "enc-key", "enc-secret", "fp-1")
        await store.disconnect("user-1")
        assert not await store.exists_by_fingerprint("fp-1")

    @pytest.mark.asyncio
    async def test_disconnect_soft_clears(self, store):
        await store.upsert_credentials("user-1", "enc-key", "enc-secret", "fp-1")
        await store.disconnect("user-1")
        record = await store.get_credentials("user-1")
        assert record.is_connected is False
        assert record.encrypted_api_key is None
        assert record.encrypted_api_secret is None
        assert record.fingerprint_hash is None

    @pytest.mark.asyncio
    async def test_disconnect_unknown_identity(self, store):
        await store.disconnect("nobody")
        assert await store.get_credentials("nobody") is None

    def test_repr_hides_ciphertexts(self):
        record = CredentialRecord(identity="user-1", encrypted_api_key="gAAAA-key",
                                  encrypted_api_secret="gAAAA-secret", is_connected=True)
        assert "gAAAA" not in repr(record)
        assert "gAAAA" not in str(record)


class TestInMemoryTrades:
    @pytest.mark.asyncio
    async def test_upsert_same_trade_twice_keeps_one(self, store):
        await store.upsert_credentials("user-1", "k", "s", "fp")
        assert await store.upsert_trades("user-1", [make_trade("t1")]) == 1
        assert await store.upsert_trades("user-1", [make_trade("t1")]) == 0
        assert [t.trade_id for t in await store.list_trades("user-1", 50)] == ["t1"]

    @pytest.mark.asyncio
    async def test_first_write_wins_by_default(self, store):
        await store.upsert_trades("user-1", [make_trade("t1", price="100")])
        await store.upsert_trades("user-1", [make_trade("t1", price="200")])
        trades = await store.list_trades("user-1", 50)
        assert trades[0].price == Decimal("100")

    @pytest.mark.asyncio
    async def test_overwrite_existing_trades(self):
        store = InMemoryTradeStore(overwrite_existing_trades=True)
        await store.upsert_trades("user-1", [make_trade("t1", price="100")])
        assert await store.upsert_trades("user-1", [make_trade("t1", price="200")]) == 0
        trades = await store.list_trades("user-1", 50)
        assert len(trades) == 1
        assert trades[0].price == Decimal("200")

    @pytest.mark.asyncio
    async def test_upsert_bumps_last_synced(self, store):
        await store.upsert_credentials("user-1", "k", "s", "fp")
        await store.upsert_trades("user-1", [])
        record = await store.get_credentials("user-1")
        assert record.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_list_is_most_recent_first_and_limited(self, store):
        await store.upsert_trades("user-1", [make_trade("a", 1), make_trade("c", 3), make_trade("b", 2)])
        assert [t.trade_id for t in await store.list_trades("user-1", 50)] == ["c", "b", "a"]
        assert [t.trade_id for t in await store.list_trades("user-1", 2)] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_trades_are_per_identity(self, store):
        await store.upsert_trades("user-1", [make_trade("t1")])
        await store.upsert_trades("user-2", [make_trade("t1"), make_trade("t2", 1)])
        assert len(await store.list_trades("user-1", 50)) == 1
        assert len(await store.list_trades("user-2", 50)) == 2

    @pytest.mark.asyncio
    async def test_history_kinds_are_kept_apart(self, store):
        closed = TradeHistoryKind.CLOSED_PNL
        await store.upsert_trades("user-1", [make_trade("exec-1", 0), make_trade("exec-2", 2)])
        await store.upsert_trades("user-1", [make_trade("close-1", 1, kind=closed),
                                             make_trade("close-2", 3, kind=closed)])

        executions = await store.list_trades("user-1", 50, TradeHistoryKind.EXECUTIONS)
        assert [t.trade_id for t in executions] == ["exec-2", "exec-1"]
        closed_trades = await store.list_trades("user-1", 50, closed)
        assert [t.trade_id for t in closed_trades] == ["close-2", "close-1"]
        assert all(t.kind is closed for t in closed_trades)

    @pytest.mark.asyncio
    async def test_same_id_in_both_kinds(self, store):
        assert await store.upsert_trades("user-1", [make_trade("shared")]) == 1
        assert await store.upsert_trades("user-1", [make_trade("shared", kind=TradeHistoryKind.CLOSED_PNL)]) == 1
        assert len(await store.list_trades("user-1", 50, TradeHistoryKind.EXECUTIONS)) == 1
        assert len(await store.list_trades("user-1", 50, TradeHistoryKind.CLOSED_PNL)) == 1

    @pytest.mark.asyncio
    async def test_disconnect_purges_trades(self, store):
        await store.upsert_credentials("user-1", "k", "s", "fp")
        await store.upsert_trades("user-1", [make_trade("t1")])
        await store.disconnect("user-1")
        assert await store.list_trades("user-1", 50) == []

    @pytest.mark.asyncio
    async def test_disconnect_can_keep_trades(self):
        store = InMemoryTradeStore(purge_trades_on_disconnect=False)
        await store.upsert_credentials("user-1", "k", "s", "fp")
        await store.upsert_trades("user-1", [make_trade("t1")])
        await store.disconnect("user-1")
        assert len(await store.list_trades("user-1", 50)) == 1

    @pytest.mark.asyncio
    async def test_returned_trades_are_copies(self, store):
        await store.upsert_trades("user-1", [make_trade("t1")])
        listed = await store.list_trades("user-1", 50)
        listed[0].symbol = "MUTATED"
        assert (await store.list_trades("user-1", 50))[0].symbol == "BTCUSDT"


# ============================================================
# POSTGRES STORE (mocked asyncpg pool)
# ============================================================

@pytest.fixture
def pg_conn():
    return AsyncMock()


@pytest.fixture
def pg_pool(pg_conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = pg_conn
    pool.close = AsyncMock()
    return pool


def account_row(**overrides):
    row = {
        "identity": "user-1",
        "encrypted_api_key": "enc-key",
        "encrypted_api_secret": "enc-secret",
        "fingerprint_hash": "fp-1",
        "is_connected": True,
        "connected_at": BASE_TIME,
        "last_synced_at": None,
    }
    row.update(overrides)
    return row


class TestPostgresTradeStore:
    @pytest.mark.asyncio
    async def test_initialize_applies_schema_with_existing_pool(self, pg_pool, pg_conn):
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)
        await store.initialize()
        schema = pg_conn.execute.await_args.args[0]
        assert "CREATE TABLE IF NOT EXISTS exchange_accounts" in schema
        assert "PRIMARY KEY (identity, kind, trade_id)" in schema

    @pytest.mark.asyncio
    async def test_ping(self, pg_pool, pg_conn):
        pg_conn.fetchval.return_value = 1
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)
        assert await store.ping() is True

    @pytest.mark.asyncio
    async def test_ping_failure(self, pg_pool, pg_conn):
        pg_conn.fetchval.side_effect = OSError("connection reset")
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_upsert_credentials(self, pg_pool, pg_conn):
        pg_conn.fetchrow.return_value = account_row()
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)

        record = await store.upsert_credentials("user-1", "enc-key", "enc-secret", "fp-1")

        assert record.identity == "user-1"
        assert record.is_connected
        query, *args = pg_conn.fetchrow.await_args.args
        assert "ON CONFLICT (identity) DO UPDATE" in query
        assert args[:4] == ["user-1", "enc-key", "enc-secret", "fp-1"]

    @pytest.mark.asyncio
    async def test_get_credentials_missing(self, pg_pool, pg_conn):
        pg_conn.fetchrow.return_value = None
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)
        assert await store.get_credentials("nobody") is None

    @pytest.mark.asyncio
    async def test_exists_by_fingerprint_passes_exclusion(self, pg_pool, pg_conn):
        pg_conn.fetchval.return_value = True
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)
        assert await store.exists_by_fingerprint("fp-1", exclude_identity="user-1") is True
        assert pg_conn.fetchval.await_args.args[1:] == ("fp-1", "user-1")

    @pytest.mark.asyncio
    async def test_upsert_trades_counts_new_rows(self, pg_pool, pg_conn):
        pg_conn.fetchval.side_effect = [True, None]
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)

        inserted = await store.upsert_trades("user-1", [make_trade("t1"), make_trade("t2")])

        assert inserted == 1
        query = pg_conn.fetchval.await_args_list[0].args[0]
        assert "ON CONFLICT (identity, kind, trade_id) DO NOTHING" in query
        assert pg_conn.fetchval.await_args_list[0].args[1:4] == ("user-1", "executions", "t1")
        assert "last_synced_at" in pg_conn.execute.await_args.args[0]

    @pytest.mark.asyncio
    async def test_upsert_trades_overwrite_mode(self, pg_pool, pg_conn):
        pg_conn.fetchval.side_effect = [False]
        store = PostgresTradeStore("postgresql://test", overwrite_existing_trades=True, pool=pg_pool)

        assert await store.upsert_trades("user-1", [make_trade("t1")]) == 0
        query = pg_conn.fetchval.await_args.args[0]
        assert "DO UPDATE SET" in query
        assert "pnl = EXCLUDED.pnl" in query

    @pytest.mark.asyncio
    async def test_list_trades_maps_rows(self, pg_pool, pg_conn):
        pg_conn.fetch.return_value = [{
            "kind": "closed_pnl", "trade_id": "t1", "symbol": "BTCUSDT", "side": "Sell",
            "price": Decimal("100"), "quantity": Decimal("2"), "executed_at": BASE_TIME, "order_id": None,
            "category": "linear", "fee": Decimal("0.1"), "pnl": Decimal("5"),
        }]
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)

        trades = await store.list_trades("user-1", 10, TradeHistoryKind.CLOSED_PNL)

        assert trades[0].side is TradeSide.SELL
        assert trades[0].pnl == Decimal("5")
        assert trades[0].kind is TradeHistoryKind.CLOSED_PNL
        query, identity, kind, limit = pg_conn.fetch.await_args.args
        assert "AND kind = $2" in query
        assert "ORDER BY executed_at DESC" in query
        assert (identity, kind, limit) == ("user-1", "closed_pnl", 10)

    @pytest.mark.asyncio
    async def test_upsert_trades_wraps_driver_errors(self, pg_pool, pg_conn):
        pg_conn.fetchval.side_effect = ConnectionResetError("connection reset by peer")
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)

        with pytest.raises(StorageError) as exc_info:
            await store.upsert_trades("user-1", [make_trade("t1")])
        assert exc_info.value.code == "StorageError"
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_unreachable_pool_raises_storage_error(self, pg_pool):
        pg_pool.acquire.return_value.__aenter__.side_effect = OSError("connection refused")
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)
        with pytest.raises(StorageError):
            await store.list_trades("user-1", 10)

    @pytest.mark.asyncio
    async def test_disconnect_purges_trades(self, pg_pool, pg_conn):
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)
        await store.disconnect("user-1")
        statements = [call.args[0] for call in pg_conn.execute.await_args_list]
        assert any("UPDATE exchange_accounts" in s for s in statements)
        assert any("DELETE FROM exchange_trades" in s for s in statements)

    @pytest.mark.asyncio
    async def test_disconnect_without_purge(self, pg_pool, pg_conn):
        store = PostgresTradeStore("postgresql://test", purge_trades_on_disconnect=False, pool=pg_pool)
        await store.disconnect("user-1")
        statements = [call.args[0] for call in pg_conn.execute.await_args_list]
        assert not any("DELETE" in s for s in statements)

    @pytest.mark.asyncio
    async def test_close(self, pg_pool):
        store = PostgresTradeStore("postgresql://test", pool=pg_pool)
        await store.close()
        pg_pool.close.assert_awaited_once()
