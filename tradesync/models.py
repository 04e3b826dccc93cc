"""
Trade Sync Data Models
Canonical trade, position and credential shapes shared by the store, connector and service
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class TradeSide(str, Enum):
    BUY = "Buy"
    SELL = "Sell"

    def inverted(self) -> "TradeSide":
        return TradeSide.SELL if self is TradeSide.BUY else TradeSide.BUY


class TradeHistoryKind(str, Enum):
    """Which exchange history endpoint a trade listing is read from"""
    EXECUTIONS = "executions"
    CLOSED_PNL = "closed_pnl"


class TradeSource(str, Enum):
    EXCHANGE = "exchange"
    CACHE_FALLBACK = "cache_fallback"


class ConnectionState(str, Enum):
    """Per-identity account lifecycle"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SYNCING = "syncing"


class NormalizedTrade(BaseModel):
    trade_id: str
    symbol: str
    side: TradeSide
    price: Decimal
    quantity: Decimal
    executed_at: datetime
    order_id: Optional[str] = None
    category: str
    fee: Decimal = Decimal("0")
    pnl: Decimal = Decimal("0")
    kind: TradeHistoryKind = TradeHistoryKind.EXECUTIONS

    def to_api(self) -> Dict[str, Any]:
        """Client-facing shape"""
        return {
            "id": self.trade_id,
            "kind": self.kind.value,
            "symbol": self.symbol,
            "side": self.side.value,
            "price": float(self.price),
            "quantity": float(self.quantity),
            "time": self.executed_at.isoformat(),
            "orderId": self.order_id,
            "category": self.category,
            "fee": float(self.fee),
            "pnl": float(self.pnl),
        }


class NormalizedPosition(BaseModel):
    """Open position as reported by the exchange. Never persisted."""
    symbol: str
    side: str
    size: Decimal
    avg_price: Optional[Decimal] = None
    mark_price: Optional[Decimal] = None
    unrealised_pnl: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    position_value: Optional[Decimal] = None
    updated_at: Optional[datetime] = None

    def to_api(self) -> Dict[str, Any]:
        def _num(value: Optional[Decimal]) -> Optional[float]:
            return float(value) if value is not None else None

        return {
            "symbol": self.symbol,
            "side": self.side,
            "size": float(self.size),
            "avgPrice": _num(self.avg_price),
            "markPrice": _num(self.mark_price),
            "unrealisedPnl": _num(self.unrealised_pnl),
            "leverage": _num(self.leverage),
            "positionValue": _num(self.position_value),
            "updatedTime": self.updated_at.isoformat() if self.updated_at else None,
        }


class CredentialRecord(BaseModel):
    identity: str
    encrypted_api_key: Optional[str] = None
    encrypted_api_secret: Optional[str] = None
    fingerprint_hash: Optional[str] = None
    is_connected: bool = False
    connected_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    def __repr__(self) -> str:
        # ciphertexts stay out of reprs and log lines
        return (
            f"CredentialRecord(identity={self.identity!r}, is_connected={self.is_connected}, "
            f"connected_at={self.connected_at}, last_synced_at={self.last_synced_at})"
        )

    __str__ = __repr__


class ApiKeyInfo(BaseModel):
    """Key details reported by the exchange for a validated key"""
    uid: Optional[str] = None
    permissions: Dict[str, List[str]] = {}
    read_only: bool = False

    def to_api(self) -> Dict[str, Any]:
        return {"uid": self.uid, "permissions": self.permissions}


class ConnectResult(BaseModel):
    trades_count: int = 0
    initial_sync_error: Optional[str] = None
    user_info: Optional[ApiKeyInfo] = None


class TradesResult(BaseModel):
    trades: List[NormalizedTrade]
    source: TradeSource
    last_synced: Optional[datetime] = None
    error: Optional[str] = None


class AccountStatus(BaseModel):
    is_connected: bool
    state: ConnectionState
    connected_at: Optional[datetime] = None
    last_synced: Optional[datetime] = None
    # None unless a live check against the exchange was requested
    credentials_valid: Optional[bool] = None


# Request bodies

class ConnectAccountRequest(BaseModel):
    apiKey: Optional[str] = None
    apiSecret: Optional[str] = None
