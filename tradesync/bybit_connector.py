"""
Bybit Connector
Signed REST calls to the Bybit v5 API with typed error mapping and record normalization
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import httpx

from .bybit_signer import BybitSigner, SignatureScheme
from .errors import UpstreamDataInvalid, UpstreamError, UpstreamRejected, UpstreamUnavailable
from .metrics import exchange_request_duration, exchange_requests
from .models import ApiKeyInfo, NormalizedPosition, NormalizedTrade, TradeHistoryKind, TradeSide

logger = logging.getLogger(__name__)

KEY_INFO_PATH = "/v5/user/query-api"
EXECUTION_LIST_PATH = "/v5/execution/list"
CLOSED_PNL_PATH = "/v5/position/closed-pnl"
POSITION_LIST_PATH = "/v5/position/list"

MAX_PAGE_LIMIT = 100

DEFAULT_SIGNING = {
    "key_info": SignatureScheme.HEADER.value,
    "executions": SignatureScheme.HEADER.value,
    "positions": SignatureScheme.HEADER.value,
    "closed_pnl": SignatureScheme.QUERY.value,
}

# settleCoin sent per category with position listings
DEFAULT_SETTLE_COINS = {
    "linear": "USDT",
    "inverse": "BTC",
}


# ============================================================
# FIELD VALIDATION
# ============================================================

_MISSING = object()


def _require(record: Mapping[str, Any], field: str) -> Any:
    value = record.get(field)
    if value is None or value == "":
        raise UpstreamDataInvalid(f"Exchange record is missing required field '{field}'")
    return value


def _decimal(record: Mapping[str, Any], field: str, default: Any = _MISSING) -> Decimal:
    value = record.get(field)
    if value is None or value == "":
        if default is _MISSING:
            raise UpstreamDataInvalid(f"Exchange record is missing required field '{field}'")
        return Decimal(default)
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as e:
        raise UpstreamDataInvalid(f"Field '{field}' is not a number: {value!r}") from e
    if not parsed.is_finite():
        raise UpstreamDataInvalid(f"Field '{field}' is not a finite number: {value!r}")
    return parsed


def _optional_decimal(record: Mapping[str, Any], field: str) -> Optional[Decimal]:
    if record.get(field) in (None, ""):
        return None
    return _decimal(record, field)


def _timestamp_ms(record: Mapping[str, Any], *fields: str) -> datetime:
    """Parse the first present epoch-milliseconds field into a UTC datetime"""
    for field in fields:
        value = record.get(field)
        if value in (None, ""):
            continue
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as e:
            raise UpstreamDataInvalid(f"Field '{field}' is not an epoch-ms timestamp: {value!r}") from e
    raise UpstreamDataInvalid(f"Exchange record is missing required field '{fields[0]}'")


def _side(record: Mapping[str, Any]) -> TradeSide:
    value = _require(record, "side")
    try:
        return TradeSide(value)
    except ValueError as e:
        raise UpstreamDataInvalid(f"Unknown trade side: {value!r}") from e


def _records(result: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    records = result.get("list")
    if not isinstance(records, list):
        raise UpstreamDataInvalid("Exchange result has no 'list' array")
    for record in records:
        if not isinstance(record, dict):
            raise UpstreamDataInvalid("Exchange result 'list' contains a non-object entry")
    return records


# ============================================================
# NORMALIZATION
# ============================================================

def normalize_execution(record: Mapping[str, Any], category: str) -> NormalizedTrade:
    """Map an execution-list record. The reported side is the executed side."""
    return NormalizedTrade(
        trade_id=str(_require(record, "execId")),
        symbol=_require(record, "symbol"),
        side=_side(record),
        price=_decimal(record, "execPrice"),
        quantity=_decimal(record, "execQty"),
        executed_at=_timestamp_ms(record, "execTime"),
        order_id=record.get("orderId") or None,
        category=category,
        fee=_decimal(record, "execFee", default="0"),
        pnl=_decimal(record, "closedPnl", default="0"),
        kind=TradeHistoryKind.EXECUTIONS,
    )


def normalize_closed_pnl(record: Mapping[str, Any], category: str) -> NormalizedTrade:
    """
    Map a closed-pnl record

    The closed-pnl endpoint reports the side of the opening leg, so the side is
    inverted to surface the closing action.
    """
    quantity_field = "closedSize" if record.get("closedSize") not in (None, "") else "qty"
    fee = _decimal(record, "openFee", default="0") + _decimal(record, "closeFee", default="0")
    return NormalizedTrade(
        trade_id=str(_require(record, "orderId")),
        symbol=_require(record, "symbol"),
        side=_side(record).inverted(),
        price=_decimal(record, "avgExitPrice"),
        quantity=_decimal(record, quantity_field),
        executed_at=_timestamp_ms(record, "updatedTime", "createdTime"),
        order_id=str(record["orderId"]),
        category=category,
        fee=fee,
        pnl=_decimal(record, "closedPnl", default="0"),
        kind=TradeHistoryKind.CLOSED_PNL,
    )


def normalize_position(record: Mapping[str, Any]) -> NormalizedPosition:
    updated = None
    if record.get("updatedTime") not in (None, ""):
        updated = _timestamp_ms(record, "updatedTime")
    return NormalizedPosition(
        symbol=_require(record, "symbol"),
        side=_require(record, "side"),
        size=_decimal(record, "size"),
        avg_price=_optional_decimal(record, "avgPrice"),
        mark_price=_optional_decimal(record, "markPrice"),
        unrealised_pnl=_optional_decimal(record, "unrealisedPnl"),
        leverage=_optional_decimal(record, "leverage"),
        position_value=_optional_decimal(record, "positionValue"),
        updated_at=updated,
    )


def has_permission(result: Mapping[str, Any], required: str) -> bool:
    """
    Check a key-info result for a permission group

    Bybit reports permissions as {"ContractTrade": ["Order", "Position"], ...};
    a flat list of group names is accepted as well.
    """
    permissions = result.get("permissions")
    if isinstance(permissions, dict):
        return bool(permissions.get(required))
    if isinstance(permissions, list):
        return required in permissions
    return False


def key_info_from_result(result: Mapping[str, Any]) -> ApiKeyInfo:
    permissions = result.get("permissions")
    if isinstance(permissions, list):
        permissions = {str(group): [] for group in permissions}
    elif isinstance(permissions, dict):
        permissions = {
            str(group): [str(p) for p in scopes] if isinstance(scopes, list) else []
            for group, scopes in permissions.items()
        }
    else:
        permissions = {}
    uid = result.get("userID", result.get("uid"))
    return ApiKeyInfo(
        uid=str(uid) if uid not in (None, "") else None,
        permissions=permissions,
        read_only=str(result.get("readOnly", "0")) == "1",
    )


# ============================================================
# CONNECTOR
# ============================================================

class BybitConnector:
    """
    Bybit v5 REST connector

    Features:
    - Key-info validation with permission check
    - Execution history and closed-pnl history, normalized to NormalizedTrade
    - Open positions filtered to non-zero size
    - Per-endpoint signature scheme selection
    - Transport, exchange and payload failures mapped to typed upstream errors
    """

    def __init__(
        self,
        base_url: str = "https://api.bybit.com",
        signer: Optional[BybitSigner] = None,
        timeout_seconds: float = 10.0,
        required_permission: str = "ContractTrade",
        settle_coins: Optional[Dict[str, str]] = None,
        signing: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Bybit connector

        Args:
            base_url: Bybit API base URL
            signer: Request signer (default recv_window 5000ms)
            timeout_seconds: Upstream call timeout; a timeout maps to UpstreamUnavailable
            required_permission: Permission group a key must hold to be accepted
            settle_coins: Category -> settleCoin sent with position listings
            signing: Endpoint name -> "header" or "query"
            client: Shared httpx client; a per-call client is used when omitted
        """
        self.base_url = base_url.rstrip("/")
        self.signer = signer or BybitSigner()
        self.timeout_seconds = timeout_seconds
        self.required_permission = required_permission
        self.settle_coins = dict(DEFAULT_SETTLE_COINS if settle_coins is None else settle_coins)
        self.signing = {**DEFAULT_SIGNING, **(signing or {})}
        self.client = client

        logger.info(f"📡 Bybit connector initialized for {self.base_url}")

    async def _send(self, url: str, headers: Dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.get(url, headers=headers, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.get(url, headers=headers)

    async def _request(self, endpoint: str, path: str, api_key: str, api_secret: str,
                       params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send a signed GET request and return the `result` object

        Raises:
            UpstreamUnavailable: network failure, timeout or non-2xx HTTP status
            UpstreamRejected: non-zero retCode
            UpstreamDataInvalid: body is not the {retCode, retMsg, result} envelope
        """
        scheme = SignatureScheme(self.signing.get(endpoint, SignatureScheme.HEADER.value))
        if scheme is SignatureScheme.QUERY:
            query_params = self.signer.build_query_envelope(api_key, api_secret, params)
            query_string = urlencode(query_params)
            headers: Dict[str, str] = {}
        else:
            query_string, headers = self.signer.build_header_envelope(api_key, api_secret, params)
        url = f"{self.base_url}{path}?{query_string}" if query_string else f"{self.base_url}{path}"

        status = "ok"
        try:
            with exchange_request_duration.labels(endpoint=endpoint).time():
                try:
                    response = await self._send(url, headers)
                except httpx.TimeoutException as e:
                    raise UpstreamUnavailable(f"Bybit {endpoint} request timed out") from e
                except httpx.HTTPError as e:
                    raise UpstreamUnavailable(f"Bybit {endpoint} request failed: {type(e).__name__}") from e

            if not 200 <= response.status_code < 300:
                raise UpstreamUnavailable(f"Bybit {endpoint} returned HTTP {response.status_code}")

            try:
                payload = response.json()
            except ValueError as e:
                raise UpstreamDataInvalid(f"Bybit {endpoint} returned a non-JSON body") from e

            if not isinstance(payload, dict) or "retCode" not in payload:
                raise UpstreamDataInvalid(f"Bybit {endpoint} response has no retCode")

            try:
                ret_code = int(payload["retCode"])
            except (TypeError, ValueError) as e:
                raise UpstreamDataInvalid(f"Bybit {endpoint} retCode is not an integer") from e
            if ret_code != 0:
                raise UpstreamRejected(ret_code, payload.get("retMsg") or "")

            result = payload.get("result")
            if not isinstance(result, dict):
                raise UpstreamDataInvalid(f"Bybit {endpoint} response has no result object")
            return result
        except UpstreamRejected:
            status = "rejected"
            raise
        except UpstreamUnavailable:
            status = "unavailable"
            raise
        except UpstreamDataInvalid:
            status = "invalid"
            raise
        finally:
            exchange_requests.labels(endpoint=endpoint, status=status).inc()

    async def validate_credentials(self, api_key: str, api_secret: str) -> Optional[ApiKeyInfo]:
        """
        Check that a key pair works and holds the required permission

        Returns:
            Key details (uid, permissions) if valid, None on any failure
            (never raises upstream errors)
        """
        try:
            result = await self._request("key_info", KEY_INFO_PATH, api_key, api_secret, {})
        except UpstreamError as e:
            logger.warning(f"🔑 Credential validation failed: {e.code} - {e.message}")
            return None

        if not has_permission(result, self.required_permission):
            logger.warning(f"🔑 API key lacks the {self.required_permission} permission")
            return None
        return key_info_from_result(result)

    async def fetch_trades(self, api_key: str, api_secret: str, category: str, limit: int = 50,
                           kind: TradeHistoryKind = TradeHistoryKind.EXECUTIONS) -> List[NormalizedTrade]:
        """
        Fetch one page of trade history

        Args:
            category: Bybit product category (spot, linear, inverse, option)
            limit: Page size, clamped to 1..100
            kind: Execution list or closed-pnl history

        Returns:
            Normalized trades in exchange order
        """
        limit = max(1, min(int(limit), MAX_PAGE_LIMIT))
        params = {"category": category, "limit": limit}

        if kind is TradeHistoryKind.CLOSED_PNL:
            result = await self._request("closed_pnl", CLOSED_PNL_PATH, api_key, api_secret, params)
            trades = [normalize_closed_pnl(record, category) for record in _records(result)]
        else:
            result = await self._request("executions", EXECUTION_LIST_PATH, api_key, api_secret, params)
            trades = [normalize_execution(record, category) for record in _records(result)]

        logger.info(f"⚡ Retrieved {len(trades)} {kind.value} records from Bybit ({category})")
        return trades

    async def fetch_positions(self, api_key: str, api_secret: str, category: str) -> List[NormalizedPosition]:
        """Fetch open positions with non-zero size"""
        params: Dict[str, Any] = {"category": category}
        settle_coin = self.settle_coins.get(category)
        if settle_coin:
            params["settleCoin"] = settle_coin

        result = await self._request("positions", POSITION_LIST_PATH, api_key, api_secret, params)

        positions = []
        for record in _records(result):
            if _decimal(record, "size", default="0") <= 0:
                continue
            positions.append(normalize_position(record))

        logger.info(f"📈 Retrieved {len(positions)} open positions from Bybit ({category})")
        return positions
