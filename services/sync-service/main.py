"""
Trade Sync Service
Telegram Mini App backend: Bybit account linking, trade history sync and open positions
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tradesync import __version__
from tradesync.bybit_connector import BybitConnector
from tradesync.bybit_signer import BybitSigner
from tradesync.config_manager import ConfigManager, StorageConfig
from tradesync.credential_vault import CredentialVault
from tradesync.errors import TradeSyncError, VaultError
from tradesync.metrics import sync_registry
from tradesync.models import ConnectAccountRequest, TradeHistoryKind
from tradesync.sync_orchestrator import SyncOrchestrator
from tradesync.telegram_auth import TelegramIdentityResolver
from tradesync.trade_store import InMemoryTradeStore, PostgresTradeStore, TradeStore

config_manager = ConfigManager()
settings = config_manager.get_settings()

# Configure logging
logging.basicConfig(level=getattr(logging, settings.service.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

# Service components, created in lifespan
orchestrator: Optional[SyncOrchestrator] = None
identity_resolver: Optional[TelegramIdentityResolver] = None
trade_store: Optional[TradeStore] = None


def create_trade_store(storage: StorageConfig) -> TradeStore:
    if storage.backend == "memory":
        logger.warning("⚠️ Using in-memory trade store - data is lost on restart")
        return InMemoryTradeStore(
            purge_trades_on_disconnect=storage.purge_trades_on_disconnect,
            overwrite_existing_trades=storage.overwrite_existing_trades,
        )
    return PostgresTradeStore(
        storage.database_url,
        purge_trades_on_disconnect=storage.purge_trades_on_disconnect,
        overwrite_existing_trades=storage.overwrite_existing_trades,
        min_size=storage.pool_min_size,
        max_size=storage.pool_max_size,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global orchestrator, identity_resolver, trade_store

    errors = config_manager.validate_startup()
    if errors:
        for error in errors:
            logger.critical(f"❌ Configuration error: {error}")
        raise RuntimeError(f"Invalid configuration: {errors}")

    vault = CredentialVault(settings.vault.key)
    http_client = httpx.AsyncClient(timeout=settings.exchange.timeout_seconds)
    exchange = settings.exchange
    connector = BybitConnector(
        base_url=exchange.active_url,
        signer=BybitSigner(recv_window=exchange.recv_window),
        timeout_seconds=exchange.timeout_seconds,
        required_permission=exchange.required_permission,
        settle_coins=exchange.settle_coins,
        signing=exchange.signing,
        client=http_client,
    )

    trade_store = create_trade_store(settings.storage)
    try:
        await trade_store.initialize()
        orchestrator = SyncOrchestrator(
            vault=vault,
            connector=connector,
            store=trade_store,
            block_duplicate_accounts=settings.sync.block_duplicate_accounts,
            max_attempts=settings.sync.max_attempts,
            retry_delay_seconds=settings.sync.retry_delay_seconds,
            default_trade_category=exchange.default_trade_category,
            default_position_category=exchange.default_position_category,
            default_limit=settings.sync.default_limit,
        )
        identity_resolver = TelegramIdentityResolver(
            bot_token=settings.auth.bot_token,
            dev_mode=settings.auth.dev_mode,
            max_age_seconds=settings.auth.max_age_seconds,
        )
        logger.info(f"🚀 Trade Sync Service started (exchange={exchange.active_url}, "
                    f"storage={settings.storage.backend})")
        yield
    finally:
        await trade_store.close()
        await http_client.aclose()
        orchestrator = None
        identity_resolver = None
        logger.info("🛑 Trade Sync Service stopped")


# Initialize FastAPI app
app = FastAPI(
    title="Trade Sync Service",
    description="Bybit account linking and trade history sync for the Telegram Mini App",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.service.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TradeSyncError)
async def trade_sync_error_handler(request: Request, exc: TradeSyncError):
    if isinstance(exc, VaultError):
        logger.critical(f"🔐 Vault failure on {request.url.path}: {exc.code} - check TRADESYNC_VAULT_KEY")
    elif exc.status_code >= 500:
        logger.error(f"❌ {request.url.path} failed: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_orchestrator() -> SyncOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return orchestrator


def get_identity(request: Request) -> str:
    if identity_resolver is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return identity_resolver.resolve(request.headers)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    storage_ok = await trade_store.ping() if trade_store is not None else False
    return {
        "status": "healthy" if storage_ok and orchestrator is not None else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "storage": storage_ok,
    }


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(sync_registry), media_type=CONTENT_TYPE_LATEST)


@app.get("/account/status")
async def account_status(verify: bool = Query(False),
                         identity: str = Depends(get_identity),
                         sync: SyncOrchestrator = Depends(get_orchestrator)):
    status = await sync.account_status(identity, verify=verify)
    response = {
        "isConnected": status.is_connected,
        "state": status.state.value,
        "connectedAt": _iso(status.connected_at),
        "lastSynced": _iso(status.last_synced),
    }
    if status.credentials_valid is not None:
        response["credentialsValid"] = status.credentials_valid
    return response


@app.post("/account/connect")
async def connect_account(body: Optional[ConnectAccountRequest] = Body(None),
                          identity: str = Depends(get_identity),
                          sync: SyncOrchestrator = Depends(get_orchestrator)):
    body = body or ConnectAccountRequest()
    result = await sync.connect_account(identity, body.apiKey, body.apiSecret)
    response = {
        "success": True,
        "message": "Account connected successfully",
        "tradesCount": result.trades_count,
    }
    if result.user_info:
        response["userInfo"] = result.user_info.to_api()
    if result.initial_sync_error:
        response["initialSyncError"] = result.initial_sync_error
    return response


@app.get("/trades")
async def get_trades(limit: Optional[int] = Query(None, ge=1),
                     category: Optional[str] = Query(None),
                     kind: TradeHistoryKind = Query(TradeHistoryKind.EXECUTIONS),
                     identity: str = Depends(get_identity),
                     sync: SyncOrchestrator = Depends(get_orchestrator)):
    result = await sync.list_trades(identity, category=category, limit=limit, kind=kind)
    response = {
        "success": True,
        "trades": [trade.to_api() for trade in result.trades],
        "lastSynced": _iso(result.last_synced),
        "source": result.source.value,
    }
    if result.error:
        response["error"] = result.error
    return response


@app.get("/positions")
async def get_positions(category: Optional[str] = Query(None),
                        identity: str = Depends(get_identity),
                        sync: SyncOrchestrator = Depends(get_orchestrator)):
    positions = await sync.list_positions(identity, category=category)
    return {"success": True, "positions": [position.to_api() for position in positions]}


@app.post("/account/disconnect")
async def disconnect_account(identity: str = Depends(get_identity),
                             sync: SyncOrchestrator = Depends(get_orchestrator)):
    await sync.disconnect_account(identity)
    return {"success": True, "message": "Account disconnected"}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.service.host,
        port=settings.service.port,
        log_level=settings.service.log_level.lower(),
    )
