"""
Unit tests for the keystore module.
"""

import base64
import pytest
from unittest.mock import MagicMock, patch
from sstcrypt.security import keystore


# ==============================================================================
# Fixtures
# ==============================================================================

class FakeKeyringError(Exception):
    pass


@pytest.fixture
def mock_keyring_lib():
    """Patches the keyring module within sstcrypt.security.keystore."""
    with patch("sstcrypt.security.keystore.keyring") as mock_lib, \
            patch("sstcrypt.security.keystore.KeyringError", FakeKeyringError):
        yield mock_lib


@pytest.fixture
def no_keyring_lib():
    """Simulates keyring not being installed."""
    with patch("sstcrypt.security.keystore.keyring", None):
        yield


# ==============================================================================
# Tests: Dependency Availability
# ==============================================================================

def test_require_keyring_raises_if_missing(no_keyring_lib):
    with pytest.raises(RuntimeError, match="keyring package is not available"):
        keystore.save_key("service", "user", b"key")

    with pytest.raises(RuntimeError, match="keyring package is not available"):
        keystore.load_key("service", "user")


def test_assess_backend_returns_false_if_missing(no_keyring_lib):
    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "not installed" in msg


# ==============================================================================
# Tests: save_key / load_key
# ==============================================================================

def test_save_key_encodes_and_stores(mock_keyring_lib):
    """Key bytes are base64 encoded before storage."""
    key_bytes = b"\x01\x02\x03\x04"

    keystore.save_key("sstcrypt", "hbase", key_bytes)

    called_service, called_account, called_secret = mock_keyring_lib.set_password.call_args[0]
    assert called_service == "sstcrypt"
    assert called_account == "hbase"
    assert called_secret == base64.b64encode(key_bytes).decode("ascii")


def test_load_key_returns_bytes(mock_keyring_lib):
    original_key = b"master_key_bytes"
    mock_keyring_lib.get_password.return_value = base64.b64encode(original_key).decode("ascii")

    assert keystore.load_key("svc", "hbase") == original_key


def test_load_key_returns_none_if_missing(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = None

    assert keystore.load_key("svc", "hbase") is None


def test_load_key_raises_on_corrupt_data(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = "NotValidBase64!!!"

    with pytest.raises(ValueError, match="not valid base64"):
        keystore.load_key("svc", "hbase")


def test_load_key_backend_failure(mock_keyring_lib):
    mock_keyring_lib.get_password.side_effect = FakeKeyringError("locked")

    with pytest.raises(RuntimeError, match="keyring backend failed"):
        keystore.load_key("svc", "hbase")


# ==============================================================================
# Tests: Backend Assessment
# ==============================================================================

def _backend(class_name, priority):
    backend = MagicMock()
    backend.__class__.__name__ = class_name
    backend.priority = priority
    return backend


def test_assess_backend_fails_on_exception(mock_keyring_lib):
    mock_keyring_lib.get_keyring.side_effect = FakeKeyringError("boom")

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "failed to get keyring backend" in msg


@pytest.mark.parametrize("class_name", ["PlaintextKeyring", "UncryptedFileKeyring", "SimpleKeyring"])
def test_assess_backend_detects_insecure_names(mock_keyring_lib, class_name):
    mock_keyring_lib.get_keyring.return_value = _backend(class_name, 1)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "insecure backend detected" in msg


def test_assess_backend_low_priority(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = _backend("SomeBackend", 0)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "no suitable secure keyring backend" in msg


@pytest.mark.parametrize("class_name", ["WinVaultKeyring", "Keychain", "SecretServiceKeyring", "KWalletKeyring"])
def test_assess_backend_known_secure(mock_keyring_lib, class_name):
    mock_keyring_lib.get_keyring.return_value = _backend(class_name, 5)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is True
    assert "backend looks acceptable" in msg


def test_assess_backend_unknown_but_valid(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = _backend("CustomCloudKeyring", 10)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is True
    assert "unknown backend" in msg
