"""
Bybit Request Signer
HMAC-SHA256 signatures and request envelopes for the Bybit REST API
"""

import hashlib
import hmac
import logging
import time
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

DEFAULT_RECV_WINDOW = 5000


class SignatureScheme(str, Enum):
    """Where the signature travels"""
    QUERY = "query"
    HEADER = "header"


def current_timestamp_ms() -> int:
    return int(time.time() * 1000)


class BybitSigner:
    """
    Builds authenticated request envelopes for Bybit

    Two schemes are supported:
    - query: params (including api_key, timestamp, recv_window) sorted by key, joined as
      key=value&key=value without URL-encoding, signed, and sent with a `sign` param
    - header: HMAC over timestamp + api_key + recv_window + query string, sent as X-BAPI-* headers
    """

    def __init__(self, recv_window: int = DEFAULT_RECV_WINDOW):
        """
        Args:
            recv_window: Tolerated clock skew in milliseconds
        """
        self.recv_window = recv_window

    @staticmethod
    def canonical_query(params: Mapping[str, Any]) -> str:
        return "&".join(f"{key}={params[key]}" for key in sorted(params))

    @staticmethod
    def _hmac_hex(secret: str, message: str) -> str:
        return hmac.new(
            secret.encode('utf-8'),
            message.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()

    def sign(self, secret: str, params: Mapping[str, Any]) -> str:
        """
        Sign params with the sorted-query scheme

        Args:
            secret: API secret
            params: Request parameters, already containing timestamp and recv_window

        Returns:
            HMAC-SHA256 signature as hex string
        """
        return self._hmac_hex(secret, self.canonical_query(params))

    def build_query_envelope(self, api_key: str, secret: str, params: Mapping[str, Any],
                             timestamp: Optional[int] = None) -> Dict[str, str]:
        """Return the full query parameter set for a query-signed request"""
        signed: Dict[str, str] = {key: str(value) for key, value in params.items()}
        signed["api_key"] = api_key
        signed["timestamp"] = str(timestamp if timestamp is not None else current_timestamp_ms())
        signed["recv_window"] = str(self.recv_window)
        signed["sign"] = self.sign(secret, signed)
        return signed

    def sign_headers(self, api_key: str, secret: str, timestamp: int, query_string: str) -> str:
        """Signature for the header scheme: timestamp + api_key + recv_window + query string"""
        message = f"{timestamp}{api_key}{self.recv_window}{query_string}"
        return self._hmac_hex(secret, message)

    def build_header_envelope(self, api_key: str, secret: str, params: Mapping[str, Any],
                              timestamp: Optional[int] = None) -> Tuple[str, Dict[str, str]]:
        """
        Build query string and authentication headers for a header-signed GET request

        The returned query string is the exact string that was signed and must be
        sent verbatim.

        Returns:
            Tuple of (query string, headers)
        """
        ts = timestamp if timestamp is not None else current_timestamp_ms()
        query_string = urlencode([(key, str(value)) for key, value in params.items()])
        signature = self.sign_headers(api_key, secret, ts, query_string)
        headers = {
            "X-BAPI-API-KEY": api_key,
            "X-BAPI-TIMESTAMP": str(ts),
            "X-BAPI-SIGN": signature,
            "X-BAPI-SIGN-TYPE": "2",
            "X-BAPI-RECV-WINDOW": str(self.recv_window),
        }
        return query_string, headers
