"""Unit tests for key providers and the provider registry."""

import base64
import hashlib
import json
import threading
from unittest.mock import patch

import pytest

from sstcrypt.core.exceptions import ConfigurationError, KeyNotFound, ProviderUnavailable
from sstcrypt.security import providers
from sstcrypt.security.providers import (
    KeyProvider,
    KeyringKeyProvider,
    KeyStoreKeyProvider,
    MockAesKeyProvider,
    PassphraseKeyProvider,
    StaticKeyProvider,
    get_key_provider,
    register_key_provider,
)


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def keystore_file(tmp_path):
    path = tmp_path / "keys.json"
    path.write_text(
        json.dumps(
            {
                "hbase": base64.b64encode(b"k" * 16).decode("ascii"),
                "other": base64.b64encode(b"o" * 32).decode("ascii"),
                "broken": "not base64!!",
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def fast_passphrase():
    return PassphraseKeyProvider("correct horse", "pepper", time_cost=1, memory_cost=8192)


# ==============================================================================
# Mock provider
# ==============================================================================

def test_mock_provider_is_deterministic():
    a = MockAesKeyProvider().resolve("hbase")
    b = MockAesKeyProvider().resolve("hbase")
    assert a == b == hashlib.md5(b"hbase").digest()
    assert len(a) == 16


def test_mock_provider_differs_per_alias():
    p = MockAesKeyProvider()
    assert p.resolve("hbase") != p.resolve("hbase2")


# ==============================================================================
# Static provider
# ==============================================================================

def test_static_provider_bytes_and_base64():
    p = StaticKeyProvider({"a": b"1" * 16}, b=base64.b64encode(b"2" * 16).decode("ascii"))
    assert p.resolve("a") == b"1" * 16
    assert p.resolve("b") == b"2" * 16


def test_static_provider_unknown_alias():
    with pytest.raises(KeyNotFound) as excinfo:
        StaticKeyProvider({}).resolve("missing")
    assert excinfo.value.alias == "missing"


def test_static_provider_rejects_bad_base64():
    with pytest.raises(ConfigurationError, match="not valid base64"):
        StaticKeyProvider(a="@@@")


# ==============================================================================
# Keystore provider
# ==============================================================================

def test_keystore_provider_resolves(keystore_file):
    p = KeyStoreKeyProvider(keystore_file)
    assert p.resolve("hbase") == b"k" * 16
    assert p.resolve("other") == b"o" * 32


def test_keystore_provider_corrupt_entry_is_unavailable(keystore_file):
    p = KeyStoreKeyProvider(keystore_file)
    with pytest.raises(ProviderUnavailable, match="corrupt") as excinfo:
        p.resolve("broken")
    assert excinfo.value.alias == "broken"
    # the rest of the keystore stays usable
    assert p.resolve("hbase") == b"k" * 16


def test_keystore_provider_unknown_alias(keystore_file):
    with pytest.raises(KeyNotFound):
        KeyStoreKeyProvider(keystore_file).resolve("nope")


def test_keystore_provider_missing_file(tmp_path):
    with pytest.raises(ProviderUnavailable) as excinfo:
        KeyStoreKeyProvider(tmp_path / "missing.json").resolve("hbase")
    assert excinfo.value.alias == "hbase"


def test_keystore_provider_invalid_json(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ProviderUnavailable, match="not valid JSON"):
        KeyStoreKeyProvider(path).resolve("hbase")


def test_keystore_provider_reload_picks_up_rotation(keystore_file):
    p = KeyStoreKeyProvider(keystore_file)
    assert p.resolve("hbase") == b"k" * 16
    keystore_file.write_text(
        json.dumps({"hbase": base64.b64encode(b"n" * 16).decode("ascii")}), encoding="utf-8"
    )
    # cached until reload
    assert p.resolve("hbase") == b"k" * 16
    p.reload()
    assert p.resolve("hbase") == b"n" * 16


def test_keystore_provider_concurrent_resolution(keystore_file):
    p = KeyStoreKeyProvider(keystore_file)
    errors = []

    def worker():
        try:
            for _ in range(50):
                assert p.resolve("hbase") == b"k" * 16
        except Exception as e:  # collected for the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []


# ==============================================================================
# Keyring provider
# ==============================================================================

@pytest.fixture
def mock_keystore():
    with patch("sstcrypt.security.providers.keystore", autospec=True) as mock:
        mock.assess_keyring_backend.return_value = (True, "ok")
        yield mock


def test_keyring_provider_resolves(mock_keystore):
    mock_keystore.load_key.return_value = b"r" * 16
    p = KeyringKeyProvider(service="svc")
    assert p.resolve("hbase") == b"r" * 16
    mock_keystore.load_key.assert_called_once_with("svc", "hbase")


def test_keyring_provider_missing_alias(mock_keystore):
    mock_keystore.load_key.return_value = None
    with pytest.raises(KeyNotFound):
        KeyringKeyProvider().resolve("hbase")


def test_keyring_provider_corrupt_entry(mock_keystore):
    mock_keystore.load_key.side_effect = ValueError("not valid base64")
    with pytest.raises(ProviderUnavailable, match="not valid base64"):
        KeyringKeyProvider().resolve("hbase")


def test_keyring_provider_backend_down(mock_keystore):
    mock_keystore.load_key.side_effect = RuntimeError("keyring package is not available")
    with pytest.raises(ProviderUnavailable):
        KeyringKeyProvider().resolve("hbase")


def test_keyring_provider_store_key(mock_keystore):
    KeyringKeyProvider(service="svc").store_key("hbase", b"x" * 16)
    mock_keystore.save_key.assert_called_once_with("svc", "hbase", b"x" * 16)


def test_keyring_provider_warns_on_insecure_backend(mock_keystore, caplog):
    mock_keystore.assess_keyring_backend.return_value = (False, "insecure backend detected: PlaintextKeyring")
    with caplog.at_level("WARNING", logger="sstcrypt.security.providers"):
        KeyringKeyProvider()
    assert "insecure backend" in caplog.text


# ==============================================================================
# Passphrase provider
# ==============================================================================

def test_passphrase_provider_deterministic(fast_passphrase):
    again = PassphraseKeyProvider("correct horse", "pepper", time_cost=1, memory_cost=8192)
    assert fast_passphrase.resolve("hbase") == again.resolve("hbase")
    assert len(fast_passphrase.resolve("hbase")) == 32


def test_passphrase_provider_differs_per_alias_and_salt(fast_passphrase):
    other_salt = PassphraseKeyProvider("correct horse", "salt2", time_cost=1, memory_cost=8192)
    assert fast_passphrase.resolve("a") != fast_passphrase.resolve("b")
    assert fast_passphrase.resolve("a") != other_salt.resolve("a")


def test_passphrase_provider_caches(fast_passphrase):
    with patch("sstcrypt.security.providers.derive_master_key", return_value=b"d" * 32) as mock:
        p = PassphraseKeyProvider("pw", b"salt", time_cost=1, memory_cost=8192)
        p.resolve("hbase")
        p.resolve("hbase")
    mock.assert_called_once()


def test_passphrase_provider_requires_passphrase():
    with pytest.raises(ConfigurationError):
        PassphraseKeyProvider("", "salt")


# ==============================================================================
# Registry
# ==============================================================================

def test_get_key_provider_by_short_name(keystore_file):
    assert isinstance(get_key_provider("mock"), MockAesKeyProvider)
    p = get_key_provider("keystore", path=str(keystore_file))
    assert isinstance(p, KeyStoreKeyProvider)


def test_get_key_provider_by_dotted_path():
    p = get_key_provider("sstcrypt.security.providers:MockAesKeyProvider")
    assert isinstance(p, MockAesKeyProvider)
    p = get_key_provider("sstcrypt.security.providers.MockAesKeyProvider")
    assert isinstance(p, MockAesKeyProvider)


def test_get_key_provider_errors():
    with pytest.raises(ConfigurationError, match="no key provider"):
        get_key_provider("")
    with pytest.raises(ConfigurationError, match="cannot load"):
        get_key_provider("no.such.module:Provider")
    with pytest.raises(ConfigurationError, match="not a KeyProvider"):
        get_key_provider("json:JSONDecoder")
    with pytest.raises(ConfigurationError, match="bad parameters"):
        get_key_provider("keystore", nonsense=1)


def test_register_key_provider():
    class FixedProvider(KeyProvider):
        def resolve(self, alias):
            return b"f" * 16

    register_key_provider("fixed", FixedProvider)
    try:
        assert get_key_provider("FIXED").resolve("x") == b"f" * 16
    finally:
        providers._PROVIDERS.pop("fixed")

    with pytest.raises(TypeError):
        register_key_provider("bad", dict)
