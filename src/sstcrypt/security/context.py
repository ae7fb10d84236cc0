"""Per-file encryption context.

One context belongs to exactly one writer or reader session. It holds the
plaintext data key in a bytearray so ``close()`` can overwrite it (best-effort,
like any wipe in Python) and it is never shared or cached across files.

Write path::

    ctx = EncryptionContext.for_write(config, provider)

generates a fresh DEK and wraps it under the master key named by
``config.master_key_alias``.

Read path::

    ctx = EncryptionContext.for_read(trailer, provider, alternate_alias=...)

resolves the trailer's alias and unwraps the DEK. When an alternate alias is
configured (master key rotation) it gets exactly one retry.

A plaintext context (``EncryptionContext.plaintext()``) is an explicit state:
``encrypted`` is False and blocks pass through unchanged.
"""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from sstcrypt.core.exceptions import (
    KeyNotFound,
    MasterKeyUnresolvable,
    ProviderUnavailable,
    UnwrapIntegrityFailure,
)
from sstcrypt.core.trailer import NO_ENCRYPTION, TrailerRecord

from .ciphers import BlockCipher, get_cipher
from .datakey import DataKeyGenerator, get_generator

logger = logging.getLogger(__name__)


def resolve_master_key(provider, alias: str, cipher: BlockCipher) -> bytes:
    """Resolve ``alias`` through ``provider`` and check it suits ``cipher``."""
    if provider is None:
        raise MasterKeyUnresolvable(
            alias, MasterKeyUnresolvable.UNAVAILABLE, f"no key provider configured to resolve {alias!r}"
        )
    try:
        master_key = provider.resolve(alias)
    except KeyNotFound as e:
        raise MasterKeyUnresolvable(alias, MasterKeyUnresolvable.NOT_FOUND) from e
    except ProviderUnavailable as e:
        raise MasterKeyUnresolvable(alias, MasterKeyUnresolvable.UNAVAILABLE) from e
    if not cipher.accepts_master_key(master_key):
        raise MasterKeyUnresolvable(
            alias,
            MasterKeyUnresolvable.INCOMPATIBLE,
            f"master key {alias!r} is not a valid {cipher.name} wrapping key",
        )
    return master_key


class EncryptionContext:
    __slots__ = ("cipher", "master_key_alias", "wrapped_key", "iv_seed", "_key", "_closed")

    def __init__(
        self,
        cipher: Optional[BlockCipher],
        master_key_alias: str = "",
        key: Optional[bytes] = None,
        wrapped_key: bytes = b"",
        iv_seed: bytes = b"",
    ):
        if cipher is not None:
            if key is None or len(key) != cipher.key_length:
                raise ValueError(f"{cipher.name} context needs a {cipher.key_length}-byte key")
            if not wrapped_key:
                raise ValueError("encrypted context needs the wrapped key")
        self.cipher = cipher
        self.master_key_alias = master_key_alias
        self.wrapped_key = bytes(wrapped_key)
        self.iv_seed = bytes(iv_seed)
        self._key = bytearray(key) if key is not None else None
        self._closed = False

    @classmethod
    def plaintext(cls) -> "EncryptionContext":
        return cls(None)

    @classmethod
    def for_write(
        cls, config, key_provider, generator: Optional[DataKeyGenerator] = None
    ) -> "EncryptionContext":
        """Build a fresh context for a new file.

        Raises MasterKeyUnresolvable if the configured alias cannot be resolved;
        the writer must abort rather than fall back to plaintext.
        """
        if not config.enabled:
            return cls.plaintext()
        cipher = get_cipher(config.algorithm)
        generator = generator or get_generator()
        dek = generator.generate(cipher)
        seed = generator.generate_seed(cipher)
        master_key = resolve_master_key(key_provider, config.master_key_alias, cipher)
        wrapped = cipher.wrap_key(master_key, dek)
        logger.debug(
            "New %s data key wrapped under master key %r", cipher.name, config.master_key_alias
        )
        return cls(cipher, config.master_key_alias, dek, wrapped, seed)

    @classmethod
    def for_read(
        cls, trailer: TrailerRecord, key_provider, alternate_alias: Optional[str] = None
    ) -> "EncryptionContext":
        """Rebuild the context recorded in ``trailer``.

        Raises UnsupportedAlgorithm, MasterKeyUnresolvable, UnwrapIntegrityFailure
        or MalformedTrailer. None of them are retried except the single
        alternate-alias attempt.
        """
        if trailer.algorithm_code == NO_ENCRYPTION:
            return cls.plaintext()
        cipher = get_cipher(trailer.algorithm_code)
        alias = trailer.master_key_alias
        try:
            dek = cls._unwrap(cipher, key_provider, alias, trailer.wrapped_key)
        except (MasterKeyUnresolvable, UnwrapIntegrityFailure) as primary:
            if not alternate_alias or alternate_alias == alias:
                raise
            logger.warning(
                "Master key %r failed (%s); trying alternate master key %r",
                alias, primary, alternate_alias,
            )
            try:
                dek = cls._unwrap(cipher, key_provider, alternate_alias, trailer.wrapped_key)
            except (MasterKeyUnresolvable, UnwrapIntegrityFailure):
                raise primary
            alias = alternate_alias
        return cls(cipher, alias, dek, trailer.wrapped_key, trailer.iv_seed)

    @staticmethod
    def _unwrap(cipher: BlockCipher, key_provider, alias: str, wrapped: bytes) -> bytes:
        master_key = resolve_master_key(key_provider, alias, cipher)
        return cipher.unwrap_key(master_key, wrapped)

    @property
    def encrypted(self) -> bool:
        return self.cipher is not None

    @property
    def algorithm_code(self) -> int:
        return self.cipher.code if self.cipher is not None else NO_ENCRYPTION

    @property
    def key(self) -> Optional[bytes]:
        """Plaintext DEK while the session is open; None when plaintext or closed."""
        if self._key is None or self._closed:
            return None
        return bytes(self._key)

    def _require_open(self) -> None:
        if self._closed:
            raise ValueError("encryption context is closed")

    def encrypt_block(self, block_index: int, data: bytes) -> bytes:
        self._require_open()
        if self.cipher is None:
            return bytes(data)
        return self.cipher.encrypt_block(self._key, self.iv_seed, block_index, data)

    def decrypt_block(self, block_index: int, data: bytes) -> bytes:
        self._require_open()
        if self.cipher is None:
            return bytes(data)
        return self.cipher.decrypt_block(self._key, self.iv_seed, block_index, data)

    def verify(self, key_provider) -> None:
        """Check the wrapped key resolves and unwraps back to this context's DEK."""
        self._require_open()
        if self.cipher is None:
            return
        dek = self._unwrap(self.cipher, key_provider, self.master_key_alias, self.wrapped_key)
        if not hmac.compare_digest(dek, bytes(self._key)):
            raise UnwrapIntegrityFailure("wrapped key does not unwrap to the file's data key")

    def to_trailer(self, block_count: int = 0, entry_count: int = 0) -> TrailerRecord:
        if self.cipher is None:
            return TrailerRecord.plaintext(block_count, entry_count)
        return TrailerRecord(
            self.cipher.code,
            self.master_key_alias,
            self.wrapped_key,
            self.iv_seed,
            block_count,
            entry_count,
        )

    def close(self) -> None:
        """Overwrite the in-memory DEK and mark the context closed."""
        try:
            if self._key is not None:
                for i in range(len(self._key)):
                    self._key[i] = 0
        finally:
            self._key = None
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self) -> str:
        if self.cipher is None:
            return "<EncryptionContext plaintext>"
        return f"<EncryptionContext {self.cipher.name} alias={self.master_key_alias!r}>"
