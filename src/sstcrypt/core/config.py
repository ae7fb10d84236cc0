"""Encryption settings handed to writers, readers and stores.

The configuration is an explicit object, not process-wide state, so stores
with different settings can be open side by side. It can be built directly,
from a flat mapping using dotted keys, or from ``SSTCRYPT_*`` environment
variables:

    crypto.enabled                      SSTCRYPT_ENABLED
    crypto.key.algorithm                SSTCRYPT_ALGORITHM
    crypto.master.key.name              SSTCRYPT_MASTER_KEY_ALIAS
    crypto.master.alternate.key.name    SSTCRYPT_ALTERNATE_MASTER_KEY_ALIAS
    crypto.keyprovider                  SSTCRYPT_KEY_PROVIDER
    crypto.keyprovider.parameters       SSTCRYPT_KEY_PROVIDER_PARAMS
    storefile.block.size                SSTCRYPT_BLOCK_SIZE

Provider parameters are a query string, e.g. ``path=/etc/sstcrypt/keys.json``.
"""
from __future__ import annotations

import dataclasses
import getpass
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from ..security.ciphers import DEFAULT_ALGORITHM, get_cipher
from ..security.providers import KeyProvider, get_key_provider
from .exceptions import ConfigurationError


DEFAULT_BLOCK_SIZE = 64 * 1024

ENABLED_KEY = "crypto.enabled"
ALGORITHM_KEY = "crypto.key.algorithm"
MASTER_KEY_NAME_KEY = "crypto.master.key.name"
ALTERNATE_KEY_NAME_KEY = "crypto.master.alternate.key.name"
KEY_PROVIDER_KEY = "crypto.keyprovider"
KEY_PROVIDER_PARAMS_KEY = "crypto.keyprovider.parameters"
BLOCK_SIZE_KEY = "storefile.block.size"

ENV_KEYS = {
    "SSTCRYPT_ENABLED": ENABLED_KEY,
    "SSTCRYPT_ALGORITHM": ALGORITHM_KEY,
    "SSTCRYPT_MASTER_KEY_ALIAS": MASTER_KEY_NAME_KEY,
    "SSTCRYPT_ALTERNATE_MASTER_KEY_ALIAS": ALTERNATE_KEY_NAME_KEY,
    "SSTCRYPT_KEY_PROVIDER": KEY_PROVIDER_KEY,
    "SSTCRYPT_KEY_PROVIDER_PARAMS": KEY_PROVIDER_PARAMS_KEY,
    "SSTCRYPT_BLOCK_SIZE": BLOCK_SIZE_KEY,
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _default_alias() -> str:
    # master key defaults to the current user name when none is configured
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return "sstcrypt"


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {value!r}")


def _parse_params(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    return dict(parse_qsl(str(value), keep_blank_values=True))


@dataclass(frozen=True)
class EncryptionConfig:
    enabled: bool = True
    algorithm: str = DEFAULT_ALGORITHM
    master_key_alias: str = field(default_factory=_default_alias)
    alternate_master_key_alias: Optional[str] = None
    key_provider: Optional[str] = None
    key_provider_params: Dict[str, Any] = field(default_factory=dict)
    block_size: int = DEFAULT_BLOCK_SIZE

    def __post_init__(self):
        # normalizes the algorithm name; raises UnsupportedAlgorithm
        object.__setattr__(self, "algorithm", get_cipher(self.algorithm).name)
        if not self.master_key_alias:
            raise ConfigurationError("master key alias must not be empty")
        if len(self.master_key_alias.encode("utf-8")) > 0xFFFF:
            raise ConfigurationError("master key alias is too long")
        if self.block_size <= 0:
            raise ConfigurationError(f"block size must be positive, got {self.block_size}")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "EncryptionConfig":
        kwargs: Dict[str, Any] = {}
        if ENABLED_KEY in values:
            kwargs["enabled"] = _parse_bool(ENABLED_KEY, values[ENABLED_KEY])
        if values.get(ALGORITHM_KEY):
            kwargs["algorithm"] = values[ALGORITHM_KEY]
        if values.get(MASTER_KEY_NAME_KEY):
            kwargs["master_key_alias"] = values[MASTER_KEY_NAME_KEY]
        if values.get(ALTERNATE_KEY_NAME_KEY):
            kwargs["alternate_master_key_alias"] = values[ALTERNATE_KEY_NAME_KEY]
        if values.get(KEY_PROVIDER_KEY):
            kwargs["key_provider"] = values[KEY_PROVIDER_KEY]
        if values.get(KEY_PROVIDER_PARAMS_KEY):
            kwargs["key_provider_params"] = _parse_params(values[KEY_PROVIDER_PARAMS_KEY])
        if values.get(BLOCK_SIZE_KEY):
            try:
                kwargs["block_size"] = int(values[BLOCK_SIZE_KEY])
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{BLOCK_SIZE_KEY} must be an integer") from e
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EncryptionConfig":
        environ = os.environ if environ is None else environ
        return cls.from_mapping(
            {key: environ[env] for env, key in ENV_KEYS.items() if env in environ}
        )

    def replace(self, **changes) -> "EncryptionConfig":
        return dataclasses.replace(self, **changes)

    def build_key_provider(self) -> KeyProvider:
        """Instantiate the configured key provider."""
        if not self.key_provider:
            raise ConfigurationError("encryption is enabled but no key provider is configured")
        return get_key_provider(self.key_provider, **self.key_provider_params)
