"""
Telegram Identity Resolution
Validates Telegram Mini App initData and extracts the user identity
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Dict, Mapping, Optional
from urllib.parse import parse_qsl

from .errors import Unauthorized

logger = logging.getLogger(__name__)

INIT_DATA_HEADER = "x-telegram-init-data"
DEV_USER_HEADER = "x-user-id"
DEV_DEFAULT_USER = "test-user"


def build_data_check_string(fields: Mapping[str, str]) -> str:
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields))


def compute_init_data_hash(fields: Mapping[str, str], bot_token: str) -> str:
    secret_key = hmac.new(b"WebAppData", bot_token.encode('utf-8'), hashlib.sha256).digest()
    return hmac.new(
        secret_key,
        build_data_check_string(fields).encode('utf-8'),
        hashlib.sha256
    ).hexdigest()


def verify_init_data(init_data: str, bot_token: str, max_age_seconds: int = 86400,
                     now: Optional[float] = None) -> Dict[str, str]:
    """
    Verify a Telegram Mini App initData string

    Args:
        init_data: Raw query string from Telegram.WebApp.initData
        bot_token: Bot token the Mini App belongs to
        max_age_seconds: Maximum age of auth_date; 0 disables the check
        now: Current unix time (for tests)

    Returns:
        Decoded initData fields without the hash

    Raises:
        Unauthorized: missing or invalid hash, or stale auth_date
    """
    fields = dict(parse_qsl(init_data, keep_blank_values=True))
    received_hash = fields.pop("hash", None)
    if not received_hash:
        raise Unauthorized("Invalid Telegram authentication")

    expected_hash = compute_init_data_hash(fields, bot_token)
    if not hmac.compare_digest(expected_hash, received_hash):
        raise Unauthorized("Invalid Telegram authentication")

    if max_age_seconds > 0:
        try:
            auth_date = int(fields.get("auth_date", ""))
        except ValueError:
            raise Unauthorized("Telegram auth_date missing")
        current = now if now is not None else time.time()
        if current - auth_date > max_age_seconds:
            raise Unauthorized("Telegram authentication expired")

    return fields


def identity_from_fields(fields: Mapping[str, str]) -> str:
    try:
        user = json.loads(fields["user"])
        return str(user["id"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("User data not found")


class TelegramIdentityResolver:
    """Resolves the caller identity from request headers"""

    def __init__(self, bot_token: Optional[str], dev_mode: bool = False, max_age_seconds: int = 86400):
        self.bot_token = bot_token
        self.dev_mode = dev_mode
        self.max_age_seconds = max_age_seconds
        if dev_mode:
            logger.warning("⚠️ Telegram auth running in dev mode - identities are taken from X-User-Id")

    def resolve(self, headers: Mapping[str, str]) -> str:
        if self.dev_mode:
            return headers.get(DEV_USER_HEADER) or DEV_DEFAULT_USER

        init_data = headers.get(INIT_DATA_HEADER)
        if not init_data:
            raise Unauthorized("Telegram authentication required")
        if not self.bot_token:
            logger.error("❌ Telegram bot token is not configured")
            raise Unauthorized("Telegram authentication unavailable")

        fields = verify_init_data(init_data, self.bot_token, self.max_age_seconds)
        return identity_from_fields(fields)
