"""
Configuration Manager for the Trade Sync Service
YAML configuration with environment overrides for secrets and pydantic validation
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"

REDACTED = "***REDACTED***"


class ServiceConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8010
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"


class VaultConfig(BaseModel):
    key: Optional[str] = None


class AuthConfig(BaseModel):
    bot_token: Optional[str] = None
    dev_mode: bool = False
    max_age_seconds: int = 86400


class ExchangeConfig(BaseModel):
    base_url: str = "https://api.bybit.com"
    testnet_url: str = "https://api-testnet.bybit.com"
    testnet: bool = False
    recv_window: int = 5000
    timeout_seconds: float = 10.0
    required_permission: str = "ContractTrade"
    settle_coins: Dict[str, str] = {"linear": "USDT", "inverse": "BTC"}
    default_trade_category: str = "spot"
    default_position_category: str = "linear"
    signing: Dict[str, str] = {
        "key_info": "header",
        "executions": "header",
        "positions": "header",
        "closed_pnl": "query",
    }

    @field_validator("signing")
    @classmethod
    def _check_schemes(cls, value: Dict[str, str]) -> Dict[str, str]:
        for endpoint, scheme in value.items():
            if scheme not in ("header", "query"):
                raise ValueError(f"Invalid signing scheme for {endpoint}: {scheme}")
        return value

    @property
    def active_url(self) -> str:
        return self.testnet_url if self.testnet else self.base_url


class StorageConfig(BaseModel):
    backend: str = "postgres"
    database_url: Optional[str] = None
    pool_min_size: int = 1
    pool_max_size: int = 10
    purge_trades_on_disconnect: bool = True
    overwrite_existing_trades: bool = False

    @field_validator("backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        if value not in ("postgres", "memory"):
            raise ValueError(f"Invalid storage backend: {value}. Must be 'postgres' or 'memory'")
        return value


class SyncConfig(BaseModel):
    block_duplicate_accounts: bool = True
    max_attempts: int = 2
    retry_delay_seconds: float = 0.5
    default_limit: int = 50


class Settings(BaseModel):
    service: ServiceConfig = ServiceConfig()
    vault: VaultConfig = VaultConfig()
    auth: AuthConfig = AuthConfig()
    exchange: ExchangeConfig = ExchangeConfig()
    storage: StorageConfig = StorageConfig()
    sync: SyncConfig = SyncConfig()


# Override sensitive config fields with environment variables
SENSITIVE_ENV_MAP = {
    "vault.key": "TRADESYNC_VAULT_KEY",
    "auth.bot_token": "TELEGRAM_BOT_TOKEN",
    "storage.database_url": "DATABASE_URL",
}

FLAG_ENV_MAP = {
    "exchange.testnet": "BYBIT_TESTNET",
    "auth.dev_mode": "TRADESYNC_DEV_MODE",
}


def _set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split('.')
    d = data
    for k in keys[:-1]:
        if not isinstance(d.get(k), dict):
            d[k] = {}
        d = d[k]
    d[keys[-1]] = value


def _parse_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of the raw configuration safe for logging"""
    redacted = copy.deepcopy(config)
    for path in SENSITIVE_ENV_MAP:
        section, field = path.split('.')
        values = redacted.get(section)
        if isinstance(values, dict) and values.get(field):
            redacted[section][field] = REDACTED
    return redacted


class ConfigManager:
    """Loads and validates the service configuration"""

    def __init__(self, config_path: Optional[str] = None, load_env: bool = True):
        self.config_path = Path(config_path or os.getenv("TRADESYNC_CONFIG", DEFAULT_CONFIG_PATH))
        self.config_data: Dict[str, Any] = {}
        self.settings: Settings = Settings()
        if load_env:
            load_dotenv()
        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load configuration from YAML file, apply environment overrides and validate"""
        if self.config_path.exists():
            with open(self.config_path, 'r') as file:
                self.config_data = yaml.safe_load(file) or {}
            logger.info(f"Configuration loaded successfully from {self.config_path}")
        else:
            logger.warning(f"Configuration file not found: {self.config_path}, using defaults")
            self.config_data = {}

        self._apply_env_overrides()

        try:
            self.settings = Settings(**self.config_data)
        except ValidationError as e:
            logger.error(f"Invalid configuration: {e}")
            raise ValueError(f"Invalid configuration: {e}") from e

        logger.debug(f"Effective configuration: {redact_config(self.config_data)}")

    def _apply_env_overrides(self) -> None:
        for path, env_var in SENSITIVE_ENV_MAP.items():
            if os.environ.get(env_var):
                _set_path(self.config_data, path, os.environ[env_var])
        for path, env_var in FLAG_ENV_MAP.items():
            if os.environ.get(env_var):
                _set_path(self.config_data, path, _parse_flag(os.environ[env_var]))

    def validate_startup(self) -> List[str]:
        """Return configuration errors that must stop the service from starting"""
        errors = []
        settings = self.settings
        if not settings.vault.key:
            errors.append("vault.key is not set (TRADESYNC_VAULT_KEY)")
        if settings.storage.backend == "postgres" and not settings.storage.database_url:
            errors.append("storage.database_url is not set (DATABASE_URL)")
        if not settings.auth.dev_mode and not settings.auth.bot_token:
            errors.append("auth.bot_token is not set (TELEGRAM_BOT_TOKEN) and dev_mode is off")
        if settings.sync.max_attempts < 1:
            errors.append("sync.max_attempts must be at least 1")
        return errors

    def get_settings(self) -> Settings:
        return self.settings
