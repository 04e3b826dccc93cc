"""
Trade Sync package.
Links Bybit accounts to Telegram identities, stores credentials encrypted and
serves synchronized trade and position history.
"""

from .bybit_connector import BybitConnector
from .bybit_signer import BybitSigner, SignatureScheme
from .config_manager import ConfigManager, Settings
from .credential_vault import CredentialVault
from .sync_orchestrator import SyncOrchestrator
from .trade_store import InMemoryTradeStore, PostgresTradeStore, TradeStore

__version__ = "1.0.0"

__all__ = [
    'BybitConnector',
    'BybitSigner',
    'SignatureScheme',
    'ConfigManager',
    'Settings',
    'CredentialVault',
    'SyncOrchestrator',
    'InMemoryTradeStore',
    'PostgresTradeStore',
    'TradeStore',
]
