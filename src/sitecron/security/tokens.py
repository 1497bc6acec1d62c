from __future__ import annotations

import hmac
import logging
import os
import secrets
from typing import Any

from ..config import ConfigError
from ..storage import delete_setting, get_setting, set_setting
from ..utils import log_event
from .secrets import decrypt_secret, encrypt_secret, master_key_configured

TOKEN_ENV = "SC_ENDPOINT_TOKEN"
TOKEN_SETTING_KEY = "endpoint.token"
MIN_TOKEN_LENGTH = 16
MIN_TOKEN_BYTES = 16

SOURCE_ENVIRONMENT = "environment"
SOURCE_CONFIG = "config"
SOURCE_SETTING = "setting"

_TOKEN_AAD = b"sitecron:endpoint_token"

LOGGER = logging.getLogger("sitecron.security")


class TokenAuthenticator:
    """Constant-time check of a caller token against the endpoint secret.

    Fails closed: with no usable secret every token is rejected and the
    endpoint stays disabled.
    """

    def __init__(self, secret: str | None) -> None:
        self._secret = secret or ""

    def is_configured(self) -> bool:
        return len(self._secret) >= MIN_TOKEN_LENGTH

    def verify(self, provided_token: str | None) -> bool:
        if not self.is_configured():
            return False
        if not provided_token:
            return False
        return hmac.compare_digest(
            provided_token.encode("utf-8"), self._secret.encode("utf-8")
        )


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_hex(max(nbytes, MIN_TOKEN_BYTES))


def set_token(conn: Any, token: str) -> None:
    token = (token or "").strip()
    if not token:
        delete_token(conn)
        return
    if len(token) < MIN_TOKEN_LENGTH:
        raise ConfigError(f"Token must be at least {MIN_TOKEN_LENGTH} characters long")
    if master_key_configured():
        key_id, blob = encrypt_secret(token, _TOKEN_AAD)
        set_setting(conn, TOKEN_SETTING_KEY, {"key_id": key_id, "enc": blob})
    else:
        set_setting(conn, TOKEN_SETTING_KEY, {"value": token})
    log_event(LOGGER, logging.INFO, "endpoint_token_updated", encrypted=master_key_configured())


def delete_token(conn: Any) -> bool:
    deleted = delete_setting(conn, TOKEN_SETTING_KEY)
    if deleted:
        log_event(LOGGER, logging.INFO, "endpoint_token_deleted")
    return deleted


def resolve_token(conn: Any, static_token: str | None = None) -> str | None:
    token, _ = _resolve(conn, static_token)
    return token


def token_source(conn: Any, static_token: str | None = None) -> str | None:
    _, source = _resolve(conn, static_token)
    return source


def _resolve(conn: Any, static_token: str | None) -> tuple[str | None, str | None]:
    env_token = os.environ.get(TOKEN_ENV, "").strip()
    if env_token:
        return env_token, SOURCE_ENVIRONMENT
    if static_token:
        return static_token, SOURCE_CONFIG
    stored = _load_persisted(conn)
    if stored:
        return stored, SOURCE_SETTING
    return None, None


def _load_persisted(conn: Any) -> str | None:
    stored = get_setting(conn, TOKEN_SETTING_KEY, None)
    if isinstance(stored, str):
        return stored or None
    if not isinstance(stored, dict):
        return None
    if stored.get("enc"):
        return decrypt_secret(str(stored["enc"]), _TOKEN_AAD)
    value = stored.get("value")
    return str(value) if value else None
