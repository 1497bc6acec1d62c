import base64

import pytest

from sitecron.config import ConfigError
from sitecron.security.secrets import decrypt_secret, encrypt_secret, master_key_configured


def _set_master_env(monkeypatch):
    key = base64.urlsafe_b64encode(b"a" * 32).decode("utf-8")
    monkeypatch.setenv("SC_MASTER_KEY", key)
    monkeypatch.setenv("SC_KEY_ID", "v2")


def test_encrypt_decrypt_roundtrip(monkeypatch):
    _set_master_env(monkeypatch)
    key_id, blob = encrypt_secret("supersecret", b"sitecron:test")
    assert key_id == "v2"
    assert decrypt_secret(blob, b"sitecron:test") == "supersecret"


def test_encrypt_decrypt_aad_mismatch(monkeypatch):
    _set_master_env(monkeypatch)
    _, blob = encrypt_secret("supersecret", b"sitecron:test")
    with pytest.raises(ConfigError):
        decrypt_secret(blob, b"sitecron:other")


def test_missing_or_short_master_key(monkeypatch):
    assert master_key_configured() is False
    with pytest.raises(ConfigError):
        encrypt_secret("value", b"aad")

    monkeypatch.setenv("SC_MASTER_KEY", base64.urlsafe_b64encode(b"short").decode("utf-8"))
    with pytest.raises(ConfigError):
        encrypt_secret("value", b"aad")
