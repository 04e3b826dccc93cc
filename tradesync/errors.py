"""
Trade Sync Error Taxonomy
Typed errors raised by the vault, the Bybit connector, the trade store and the orchestrator
"""

from typing import Any, Dict, Optional


class TradeSyncError(Exception):
    """Base error for the sync pipeline. Carries the wire code and HTTP status."""

    code = "InternalError"
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.message}


# Request validation errors (400, never retried)

class MissingFields(TradeSyncError):
    """API Key and Secret are required"""
    code = "MissingFields"
    status_code = 400


class InvalidCredentials(TradeSyncError):
    """Invalid API credentials"""
    code = "InvalidCredentials"
    status_code = 400


class DuplicateAccount(TradeSyncError):
    """This exchange account is already connected to another user"""
    code = "DuplicateAccount"
    status_code = 400


class AccountNotConnected(TradeSyncError):
    """Account not connected"""
    code = "AccountNotConnected"
    status_code = 400


class Unauthorized(TradeSyncError):
    """Telegram authentication required"""
    code = "Unauthorized"
    status_code = 401


# Vault errors (systemic misconfiguration)

class VaultError(TradeSyncError):
    """Credential vault failure"""
    code = "VaultError"
    status_code = 500


class EncryptionError(VaultError):
    """Encryption failed"""
    code = "EncryptionError"


class DecryptionError(VaultError):
    """Decryption failed"""
    code = "DecryptionError"


# Storage errors

class StorageError(TradeSyncError):
    """Trade store is unavailable"""
    code = "StorageError"
    status_code = 503


# Upstream (exchange) errors

class UpstreamError(TradeSyncError):
    """Exchange request failed"""
    code = "UpstreamError"
    status_code = 502


class UpstreamUnavailable(UpstreamError):
    """Exchange is unreachable or timed out"""
    code = "UpstreamUnavailable"


class UpstreamRejected(UpstreamError):
    """Exchange rejected the request"""
    code = "UpstreamRejected"

    def __init__(self, ret_code: int, ret_msg: str = ""):
        self.ret_code = ret_code
        self.ret_msg = ret_msg
        super().__init__(f"Exchange returned retCode={ret_code}: {ret_msg or 'no message'}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retCode"] = self.ret_code
        return data


class UpstreamDataInvalid(UpstreamError):
    """Exchange returned an unexpected response shape"""
    code = "UpstreamDataInvalid"
