"""OS keystore integration using keyring for master-key storage.

Master keys are stored base64-encoded under a (service, alias) pair. Use this
only where the platform keyring is trusted; `keyring` does not provide
hardware-backed security on all platforms.
"""
import base64
import binascii
from typing import Optional

try:
    import keyring
    from keyring.errors import KeyringError
except ImportError:
    keyring = None
    KeyringError = Exception


def _require_keyring():
    if keyring is None:
        raise RuntimeError("keyring package is not available; install keyring to use keystore features")


def save_key(service: str, account: str, key_bytes: bytes) -> None:
    """Persist binary key_bytes in the OS keystore under (service, account)."""
    _require_keyring()
    secret = base64.b64encode(key_bytes).decode("ascii")
    keyring.set_password(service, account, secret)


def assess_keyring_backend() -> tuple[bool, str]:
    """Return (is_secure, message) describing the current keyring backend.

    Heuristics are used because the `keyring` package exposes different backends
    across platforms. If `keyring` is not available this returns (False, reason).
    """
    if keyring is None:
        return False, "keyring package is not installed"

    try:
        backend = keyring.get_keyring()
    except KeyringError as e:
        return False, f"failed to get keyring backend: {e}"

    name = backend.__class__.__name__
    priority = getattr(backend, "priority", None)

    insecure_indicators = ("Plaintext", "Uncrypted", "Simple", "File")
    if any(tok in name for tok in insecure_indicators):
        return False, f"insecure backend detected: {name}"

    if priority is not None and priority <= 0:
        return False, f"no suitable secure keyring backend available (priority={priority}, backend={name})"

    if "Win" in name or "Keychain" in name or "SecretService" in name or "KWallet" in name:
        return True, f"backend looks acceptable: {name} (priority={priority})"

    return True, f"unknown backend '{name}', treat with caution (priority={priority})"


def load_key(service: str, account: str) -> Optional[bytes]:
    """Load a key from the OS keystore; returns raw bytes or None if absent.

    Backend failures raise RuntimeError; a stored value that is not valid
    base64 raises ValueError.
    """
    _require_keyring()
    try:
        secret = keyring.get_password(service, account)
    except KeyringError as e:
        raise RuntimeError(f"keyring backend failed: {e}") from e
    if secret is None:
        return None
    try:
        return base64.b64decode(secret, validate=True)
    except binascii.Error as e:
        raise ValueError(f"keystore entry {service}/{account} is not valid base64") from e
