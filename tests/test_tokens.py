import base64

import pytest

from sitecron.config import ConfigError
from sitecron.security.tokens import (
    TOKEN_SETTING_KEY,
    TokenAuthenticator,
    delete_token,
    generate_token,
    resolve_token,
    set_token,
    token_source,
)
from sitecron.storage import get_setting

SECRET = "0123456789abcdef0123"


def _set_master_env(monkeypatch, fill=b"a"):
    key = base64.urlsafe_b64encode(fill * 32).decode("utf-8")
    monkeypatch.setenv("SC_MASTER_KEY", key)
    monkeypatch.setenv("SC_KEY_ID", "v1")


@pytest.mark.parametrize("provided", [None, "", SECRET, "anything-at-all-long-enough"])
def test_verify_fails_closed_without_secret(provided):
    authenticator = TokenAuthenticator(None)
    assert authenticator.is_configured() is False
    assert authenticator.verify(provided) is False


def test_short_secret_counts_as_unconfigured():
    assert TokenAuthenticator("short").verify("short") is False


def test_verify_matches_only_exact_token():
    authenticator = TokenAuthenticator(SECRET)
    assert authenticator.verify(SECRET) is True
    assert authenticator.verify(SECRET[:-1] + "X") is False
    assert authenticator.verify(SECRET + "0") is False
    assert authenticator.verify("") is False
    assert authenticator.verify(None) is False


def test_generate_token_is_hex_of_at_least_16_bytes():
    token = generate_token(4)
    assert len(token) == 32
    int(token, 16)
    assert generate_token() != generate_token()


def test_set_token_rejects_short_values(conn):
    with pytest.raises(ConfigError):
        set_token(conn, "too-short")
    assert resolve_token(conn) is None


def test_set_token_with_empty_value_deletes(conn):
    set_token(conn, SECRET)
    set_token(conn, "   ")
    assert resolve_token(conn) is None
    assert delete_token(conn) is False


def test_token_precedence_env_then_config_then_setting(conn, monkeypatch):
    set_token(conn, SECRET)
    assert resolve_token(conn) == SECRET
    assert token_source(conn) == "setting"

    assert resolve_token(conn, "config-token-0123456") == "config-token-0123456"
    assert token_source(conn, "config-token-0123456") == "config"

    monkeypatch.setenv("SC_ENDPOINT_TOKEN", "env-token-0123456789")
    assert resolve_token(conn, "config-token-0123456") == "env-token-0123456789"
    assert token_source(conn, "config-token-0123456") == "environment"


def test_token_is_encrypted_at_rest_with_master_key(conn, monkeypatch):
    _set_master_env(monkeypatch)
    set_token(conn, SECRET)

    stored = get_setting(conn, TOKEN_SETTING_KEY, None)
    assert stored["key_id"] == "v1"
    assert SECRET not in stored["enc"]
    assert resolve_token(conn) == SECRET


def test_token_with_wrong_master_key_fails_closed(conn, monkeypatch):
    _set_master_env(monkeypatch)
    set_token(conn, SECRET)

    _set_master_env(monkeypatch, fill=b"b")
    with pytest.raises(ConfigError):
        resolve_token(conn)
