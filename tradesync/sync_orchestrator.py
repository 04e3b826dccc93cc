"""
Sync Orchestrator
Connect, list and disconnect use cases composed from the vault, the Bybit connector and the trade store
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from .bybit_connector import MAX_PAGE_LIMIT, BybitConnector
from .credential_vault import CredentialVault
from .errors import (
    AccountNotConnected,
    DuplicateAccount,
    InvalidCredentials,
    MissingFields,
    StorageError,
    UpstreamError,
    UpstreamUnavailable,
)
from .metrics import accounts_connected, trades_served
from .models import (
    AccountStatus,
    ConnectionState,
    ConnectResult,
    CredentialRecord,
    NormalizedPosition,
    TradeHistoryKind,
    TradeSource,
    TradesResult,
)
from .trade_store import TradeStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncOrchestrator:
    """
    Use-case layer of the sync pipeline

    Account lifecycle per identity:
        disconnected -> connecting -> connected -> (syncing <-> connected) -> disconnected

    Failure policy:
    - trade listing falls back to cached trades on any upstream error
    - position listing and account connection surface upstream errors
    - the initial prefetch on connect reports upstream and storage errors instead of raising
    - UpstreamUnavailable is retried up to max_attempts with exponential backoff
    """

    def __init__(
        self,
        vault: CredentialVault,
        connector: BybitConnector,
        store: TradeStore,
        block_duplicate_accounts: bool = True,
        max_attempts: int = 2,
        retry_delay_seconds: float = 0.5,
        default_trade_category: str = "spot",
        default_position_category: str = "linear",
        default_limit: int = 50,
    ):
        self.vault = vault
        self.connector = connector
        self.store = store
        self.block_duplicate_accounts = block_duplicate_accounts
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.default_trade_category = default_trade_category
        self.default_position_category = default_position_category
        self.default_limit = default_limit

    @staticmethod
    def _transition(identity: str, state: ConnectionState) -> None:
        logger.debug(f"🔁 {identity} -> {state.value}")

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.default_limit
        return max(1, min(int(limit), MAX_PAGE_LIMIT))

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        delay = self.retry_delay_seconds
        attempt = 1
        while True:
            try:
                return await operation()
            except UpstreamUnavailable as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    f"⚠️ {description} attempt {attempt}/{self.max_attempts} failed: {e.message} - "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)
                delay *= 2
                attempt += 1

    async def _require_connected(self, identity: str) -> CredentialRecord:
        record = await self.store.get_credentials(identity)
        if record is None or not record.is_connected:
            raise AccountNotConnected()
        return record

    def _decrypt(self, record: CredentialRecord) -> Tuple[str, str]:
        return (
            self.vault.decrypt(record.encrypted_api_key),
            self.vault.decrypt(record.encrypted_api_secret),
        )

    async def connect_account(self, identity: str, api_key: Optional[str],
                              api_secret: Optional[str]) -> ConnectResult:
        """
        Validate, encrypt and store an exchange key pair, then prefetch recent trades

        Raises:
            MissingFields: identity, key or secret absent
            DuplicateAccount: key pair already linked to another identity (when blocking is enabled)
            InvalidCredentials: the exchange rejected the key or it lacks the required permission
        """
        api_key = (api_key or "").strip()
        api_secret = (api_secret or "").strip()
        if not identity or not api_key or not api_secret:
            raise MissingFields()

        fingerprint = self.vault.fingerprint(api_key, api_secret)
        if self.block_duplicate_accounts and await self.store.exists_by_fingerprint(
                fingerprint, exclude_identity=identity):
            logger.warning(f"🚫 Account {fingerprint[:12]} is already linked to another identity")
            raise DuplicateAccount()

        self._transition(identity, ConnectionState.CONNECTING)
        key_info = await self.connector.validate_credentials(api_key, api_secret)
        if key_info is None:
            self._transition(identity, ConnectionState.DISCONNECTED)
            raise InvalidCredentials()

        await self.store.upsert_credentials(
            identity,
            self.vault.encrypt(api_key),
            self.vault.encrypt(api_secret),
            fingerprint,
        )
        accounts_connected.inc()
        self._transition(identity, ConnectionState.CONNECTED)
        logger.info(f"✅ Account {fingerprint[:12]} connected for {identity}")

        # Initial sync is a prefetch; the connection stands even if it fails
        try:
            self._transition(identity, ConnectionState.SYNCING)
            trades = await self.connector.fetch_trades(
                api_key, api_secret, self.default_trade_category, self.default_limit
            )
            await self.store.upsert_trades(identity, trades)
            return ConnectResult(trades_count=len(trades), user_info=key_info)
        except (UpstreamError, StorageError) as e:
            logger.warning(f"⚠️ Initial trade sync failed for {identity}: {e.code} - {e.message}")
            return ConnectResult(trades_count=0, initial_sync_error=e.code, user_info=key_info)
        finally:
            self._transition(identity, ConnectionState.CONNECTED)

    async def list_trades(self, identity: str, category: Optional[str] = None, limit: Optional[int] = None,
                          kind: TradeHistoryKind = TradeHistoryKind.EXECUTIONS) -> TradesResult:
        """
        Fetch fresh trades, merge them into the store and return the stored view

        Falls back to cached trades when the exchange call fails. With an empty
        cache the upstream error is raised.
        """
        record = await self._require_connected(identity)
        api_key, api_secret = self._decrypt(record)
        category = category or self.default_trade_category
        limit = self._clamp_limit(limit)

        self._transition(identity, ConnectionState.SYNCING)
        try:
            fresh = await self._with_retry(
                lambda: self.connector.fetch_trades(api_key, api_secret, category, limit, kind),
                "fetch_trades",
            )
        except UpstreamError as e:
            cached = await self.store.list_trades(identity, limit, kind)
            self._transition(identity, ConnectionState.CONNECTED)
            if not cached:
                logger.error(f"❌ Trade fetch failed for {identity} and no cached trades exist: {e.code}")
                raise
            logger.warning(f"🔄 Serving {len(cached)} cached trades for {identity}: {e.code} - {e.message}")
            trades_served.labels(source=TradeSource.CACHE_FALLBACK.value).inc()
            return TradesResult(
                trades=cached,
                source=TradeSource.CACHE_FALLBACK,
                last_synced=record.last_synced_at,
                error=e.code,
            )

        await self.store.upsert_trades(identity, fresh)
        merged = await self.store.list_trades(identity, limit, kind)
        synced = await self.store.get_credentials(identity)
        self._transition(identity, ConnectionState.CONNECTED)
        trades_served.labels(source=TradeSource.EXCHANGE.value).inc()
        return TradesResult(
            trades=merged,
            source=TradeSource.EXCHANGE,
            last_synced=synced.last_synced_at if synced else None,
        )

    async def list_positions(self, identity: str, category: Optional[str] = None) -> List[NormalizedPosition]:
        """Open positions straight from the exchange. No cache, errors surface."""
        record = await self._require_connected(identity)
        api_key, api_secret = self._decrypt(record)
        category = category or self.default_position_category
        return await self._with_retry(
            lambda: self.connector.fetch_positions(api_key, api_secret, category),
            "fetch_positions",
        )

    async def disconnect_account(self, identity: str) -> None:
        """Idempotent; succeeds whether or not an account is linked"""
        await self.store.disconnect(identity)
        self._transition(identity, ConnectionState.DISCONNECTED)
        logger.info(f"🔌 Account disconnected for {identity}")

    async def account_status(self, identity: str, verify: bool = False) -> AccountStatus:
        """
        Stored connection state for an identity

        With verify set, the stored key pair is also checked against the exchange;
        is_connected and credentials_valid then report the live outcome. The
        stored record is left as is.
        """
        record = await self.store.get_credentials(identity)
        if record is None or not record.is_connected:
            return AccountStatus(
                is_connected=False,
                state=ConnectionState.DISCONNECTED,
                last_synced=record.last_synced_at if record else None,
                credentials_valid=False if verify else None,
            )

        credentials_valid = None
        if verify:
            api_key, api_secret = self._decrypt(record)
            credentials_valid = await self.connector.validate_credentials(api_key, api_secret) is not None
            if not credentials_valid:
                logger.warning(f"🔑 Stored credentials for {identity} failed the live check")

        return AccountStatus(
            is_connected=credentials_valid is not False,
            state=ConnectionState.CONNECTED,
            connected_at=record.connected_at,
            last_synced=record.last_synced_at,
            credentials_valid=credentials_valid,
        )
