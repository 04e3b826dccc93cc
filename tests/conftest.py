"""
Pytest configuration and shared fixtures for the trade sync tests
"""

from typing import Any, Callable, Dict, List

import httpx
import pytest

from tradesync.bybit_connector import BybitConnector
from tradesync.bybit_signer import BybitSigner
from tradesync.credential_vault import CredentialVault
from tradesync.trade_store import InMemoryTradeStore

TEST_VAULT_KEY = CredentialVault.generate_key()
TEST_BASE_URL = "https://api.bybit.test"
TEST_API_KEY = "test_bybit_key"
TEST_API_SECRET = "test_bybit_secret"


def bybit_envelope(result: Any, ret_code: int = 0, ret_msg: str = "OK") -> Dict[str, Any]:
    """Wrap a result the way Bybit v5 does"""
    return {"retCode": ret_code, "retMsg": ret_msg, "result": result, "retExtInfo": {}, "time": 1700000000000}


@pytest.fixture
def envelope() -> Callable[..., Dict[str, Any]]:
    return bybit_envelope


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_VAULT_KEY)


@pytest.fixture
def store() -> InMemoryTradeStore:
    return InMemoryTradeStore()


@pytest.fixture
def signer() -> BybitSigner:
    return BybitSigner(recv_window=5000)


@pytest.fixture
def make_connector(signer) -> Callable[..., BybitConnector]:
    """Build a connector whose HTTP calls are answered by `handler`"""
    def _make(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> BybitConnector:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return BybitConnector(base_url=TEST_BASE_URL, signer=signer, client=client, **kwargs)
    return _make


@pytest.fixture
def key_info_result() -> Dict[str, Any]:
    return {
        "id": "13770661",
        "note": "journal",
        "apiKey": TEST_API_KEY,
        "readOnly": 1,
        "permissions": {
            "ContractTrade": ["Order", "Position"],
            "Spot": ["SpotTrade"],
            "Wallet": [],
        },
        "userID": 100245,
    }


@pytest.fixture
def execution_records() -> List[Dict[str, Any]]:
    return [
        {
            "symbol": "BTCUSDT",
            "orderId": "order-1",
            "orderLinkId": "",
            "side": "Buy",
            "execId": "exec-1",
            "execPrice": "42000.5",
            "execQty": "0.010",
            "execFee": "0.25",
            "execTime": "1700000000000",
            "feeCurrency": "USDT",
        },
        {
            "symbol": "ETHUSDT",
            "orderId": "order-2",
            "orderLinkId": "",
            "side": "Sell",
            "execId": "exec-2",
            "execPrice": "2100",
            "execQty": "1.5",
            "execFee": "",
            "execTime": "1700000600000",
            "closedPnl": "12.5",
        },
    ]


@pytest.fixture
def closed_pnl_records() -> List[Dict[str, Any]]:
    return [
        {
            "symbol": "BTCUSDT",
            "orderId": "close-1",
            "side": "Buy",
            "qty": "0.02",
            "closedSize": "0.02",
            "avgEntryPrice": "41000",
            "avgExitPrice": "42000",
            "closedPnl": "20",
            "openFee": "0.4",
            "closeFee": "0.42",
            "createdTime": "1700000000000",
            "updatedTime": "1700000300000",
        },
        {
            "symbol": "SOLUSDT",
            "orderId": "close-2",
            "side": "Sell",
            "qty": "10",
            "avgEntryPrice": "60",
            "avgExitPrice": "58",
            "closedPnl": "20",
            "createdTime": "1700000900000",
            "updatedTime": "",
        },
    ]
