"""Key providers: resolve a master-key alias to key bytes.

All providers share one contract::

    resolve(alias) -> bytes      # raises KeyNotFound or ProviderUnavailable

Providers are safe to call from many reader/writer sessions at once. Those
that cache only lock around the cache itself, never around the backend call,
so unrelated lookups do not queue behind each other.

Providers are selected by short name (``mock``, ``static``, ``keystore``,
``keyring``, ``passphrase``) or by a dotted ``module:Class`` path.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import importlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Mapping, Optional, Type

from sstcrypt.core.exceptions import ConfigurationError, KeyNotFound, ProviderUnavailable

from . import keystore
from .kdf import alias_salt, derive_master_key

logger = logging.getLogger(__name__)


class KeyProvider(ABC):
    """Abstract key provider interface."""

    name = "abstract"

    @abstractmethod
    def resolve(self, alias: str) -> bytes:
        """Return the key bytes for ``alias``."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class MockAesKeyProvider(KeyProvider):
    """Deterministic test double: the key for an alias is MD5(alias).

    Always yields a 16-byte AES key, needs no backend, and gives the same key
    for the same alias in every process.
    """

    name = "mock"

    def __init__(self, **params):
        # accepts and ignores provider parameters so it can stand in for any provider
        self.params = dict(params)

    def resolve(self, alias: str) -> bytes:
        return hashlib.md5(alias.encode("utf-8")).digest()


def _decode_key(alias: str, value) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ConfigurationError(f"key for alias {alias!r} is not valid base64") from e


class StaticKeyProvider(KeyProvider):
    """In-memory alias -> key table.

    Keys may be given as bytes or as base64 strings (the form used in
    configuration parameters).
    """

    name = "static"

    def __init__(self, keys: Optional[Mapping[str, bytes]] = None, **encoded):
        self._keys: Dict[str, bytes] = {}
        for alias, value in dict(keys or {}, **encoded).items():
            self._keys[alias] = _decode_key(alias, value)

    def resolve(self, alias: str) -> bytes:
        try:
            return bytes(self._keys[alias])
        except KeyError:
            raise KeyNotFound(alias, f"alias {alias!r} not in static keystore") from None


class KeyStoreKeyProvider(KeyProvider):
    """Reads master keys from a JSON keystore file ``{"alias": "<base64 key>"}``.

    The file is loaded on first use and cached; ``reload()`` drops the cache so
    a rotated keystore is picked up.
    """

    name = "keystore"

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._keys: Optional[Dict[str, Optional[bytes]]] = None
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Optional[bytes]]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except OSError as e:
            raise ProviderUnavailable("*", f"cannot read keystore {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ProviderUnavailable("*", f"keystore {self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ProviderUnavailable("*", f"keystore {self.path} must hold a JSON object")
        keys = {}
        for alias, value in raw.items():
            try:
                keys[alias] = base64.b64decode(value, validate=True)
            except (binascii.Error, TypeError):
                # None marks a corrupt entry
                keys[alias] = None
                logger.warning("Keystore entry %r in %s is not valid base64", alias, self.path)
        logger.debug("Loaded %d entries from keystore %s", len(keys), self.path)
        return keys

    def _entries(self) -> Dict[str, Optional[bytes]]:
        with self._lock:
            if self._keys is None:
                self._keys = self._load()
            return self._keys

    def reload(self) -> None:
        with self._lock:
            self._keys = None

    def resolve(self, alias: str) -> bytes:
        try:
            key = self._entries()[alias]
        except ProviderUnavailable as e:
            raise ProviderUnavailable(alias, str(e)) from e
        except KeyError:
            raise KeyNotFound(alias, f"alias {alias!r} not in keystore {self.path}") from None
        if key is None:
            raise ProviderUnavailable(alias, f"keystore entry {alias!r} in {self.path} is corrupt")
        return key

    def __repr__(self) -> str:
        return f"<KeyStoreKeyProvider {self.path}>"


class KeyringKeyProvider(KeyProvider):
    """Resolves aliases from the OS keyring (see keystore.py)."""

    name = "keyring"

    def __init__(self, service: str = "sstcrypt"):
        self.service = service
        secure, msg = keystore.assess_keyring_backend()
        if not secure:
            logger.warning("Keyring provider for service %r: %s", service, msg)

    def store_key(self, alias: str, key: bytes) -> None:
        try:
            keystore.save_key(self.service, alias, key)
        except RuntimeError as e:
            raise ProviderUnavailable(alias, str(e)) from e

    def resolve(self, alias: str) -> bytes:
        try:
            key = keystore.load_key(self.service, alias)
        except RuntimeError as e:
            raise ProviderUnavailable(alias, str(e)) from e
        except ValueError as e:
            raise ProviderUnavailable(alias, str(e)) from e
        if key is None:
            raise KeyNotFound(alias, f"alias {alias!r} not in keyring service {self.service!r}")
        return key

    def __repr__(self) -> str:
        return f"<KeyringKeyProvider service={self.service!r}>"


class PassphraseKeyProvider(KeyProvider):
    """Derives a master key per alias from one passphrase with Argon2id.

    Every alias resolves (there is no "unknown" alias); the derived keys are
    cached because Argon2id is deliberately slow.
    """

    name = "passphrase"

    def __init__(
        self,
        passphrase: str | bytes,
        salt: str | bytes,
        key_length: int = 32,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 1,
    ):
        if not passphrase:
            raise ConfigurationError("passphrase provider needs a non-empty passphrase")
        if isinstance(salt, str):
            salt = salt.encode("utf-8")
        self._passphrase = passphrase
        self._salt = salt
        self.key_length = int(key_length)
        self.time_cost = int(time_cost)
        self.memory_cost = int(memory_cost)
        self.parallelism = int(parallelism)
        self._cache: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def resolve(self, alias: str) -> bytes:
        with self._lock:
            cached = self._cache.get(alias)
        if cached is not None:
            return cached
        key = derive_master_key(
            self._passphrase,
            alias_salt(self._salt, alias),
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            key_len=self.key_length,
        )
        with self._lock:
            self._cache.setdefault(alias, key)
        return key


_PROVIDERS: Dict[str, Type[KeyProvider]] = {
    MockAesKeyProvider.name: MockAesKeyProvider,
    StaticKeyProvider.name: StaticKeyProvider,
    KeyStoreKeyProvider.name: KeyStoreKeyProvider,
    KeyringKeyProvider.name: KeyringKeyProvider,
    PassphraseKeyProvider.name: PassphraseKeyProvider,
}


def register_key_provider(name: str, provider_cls: Type[KeyProvider]) -> None:
    if not (isinstance(provider_cls, type) and issubclass(provider_cls, KeyProvider)):
        raise TypeError(f"{provider_cls!r} is not a KeyProvider subclass")
    _PROVIDERS[name.lower()] = provider_cls


def _import_provider(path: str) -> Type[KeyProvider]:
    if ":" in path:
        module_name, _, attr = path.partition(":")
    else:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ConfigurationError(f"unknown key provider {path!r}")
    try:
        module = importlib.import_module(module_name)
        provider_cls = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"cannot load key provider {path!r}: {e}") from e
    if not (isinstance(provider_cls, type) and issubclass(provider_cls, KeyProvider)):
        raise ConfigurationError(f"{path!r} is not a KeyProvider subclass")
    return provider_cls


def get_key_provider(name: str, **params) -> KeyProvider:
    """Instantiate a provider by short name or dotted class path."""
    if not name:
        raise ConfigurationError("no key provider configured")
    provider_cls = _PROVIDERS.get(name.lower()) or _import_provider(name)
    try:
        return provider_cls(**params)
    except TypeError as e:
        raise ConfigurationError(f"bad parameters for key provider {name!r}: {e}") from e
