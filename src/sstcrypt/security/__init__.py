"""Keying and cipher primitives for sstcrypt.

This package provides:
- a cipher registry with per-block IV derivation and data-key wrapping
- fresh per-file data key generation
- the per-file encryption context used by store file writers and readers
- pluggable key providers resolving master-key aliases
"""

from .ciphers import available_ciphers, get_cipher, register_cipher
from .context import EncryptionContext
from .datakey import DataKeyGenerator, generate_data_key
from .providers import (
    KeyProvider,
    KeyringKeyProvider,
    KeyStoreKeyProvider,
    MockAesKeyProvider,
    PassphraseKeyProvider,
    StaticKeyProvider,
    get_key_provider,
    register_key_provider,
)

__all__ = [
    "available_ciphers",
    "get_cipher",
    "register_cipher",
    "EncryptionContext",
    "DataKeyGenerator",
    "generate_data_key",
    "KeyProvider",
    "KeyringKeyProvider",
    "KeyStoreKeyProvider",
    "MockAesKeyProvider",
    "PassphraseKeyProvider",
    "StaticKeyProvider",
    "get_key_provider",
    "register_key_provider",
]
