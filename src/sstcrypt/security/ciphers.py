"""Block cipher registry used to encrypt store file blocks and wrap data keys.

Every algorithm is looked up by name (case-insensitive) or by the small
integer code persisted in the file trailer. Code 0 means "no encryption" and
is never registered.

Per-block IVs are derived from a per-file seed and the block number:

    iv = SHA-256(seed || block_index as 8 bytes big-endian)[:iv_length]

so only the seed has to be stored. Data keys are wrapped with RFC 3394 AES key
wrap under a key-encryption key derived from the master key with HKDF-SHA256;
the wrapped form is always ``key_length + 8`` bytes.
"""
from __future__ import annotations

import hashlib
import threading
from typing import Dict, List, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.keywrap import InvalidUnwrap, aes_key_unwrap, aes_key_wrap

from sstcrypt.core.exceptions import (
    BlockIntegrityFailure,
    MalformedTrailer,
    UnsupportedAlgorithm,
    UnwrapIntegrityFailure,
)


NO_ENCRYPTION = 0
MASTER_KEY_LENGTHS = (16, 24, 32)
WRAP_OVERHEAD = 8  # RFC 3394 integrity check value


def _derive_kek(master_key: bytes, info: bytes) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info)
    return hkdf.derive(master_key)


class BlockCipher:
    """Base class for registered algorithms.

    Subclasses implement ``_encrypt`` and ``_decrypt``; IV derivation and key
    wrapping are shared.
    """

    name = ""
    code = NO_ENCRYPTION
    key_length = 16
    iv_length = 16
    seed_length = 16
    authenticated = False

    @property
    def wrapped_length(self) -> int:
        return self.key_length + WRAP_OVERHEAD

    def derive_iv(self, seed: bytes, block_index: int) -> bytes:
        h = hashlib.sha256()
        h.update(seed)
        h.update(block_index.to_bytes(8, "big"))
        return h.digest()[: self.iv_length]

    def accepts_master_key(self, master_key: bytes) -> bool:
        return master_key is not None and len(master_key) in MASTER_KEY_LENGTHS

    def _kek(self, master_key: bytes) -> bytes:
        return _derive_kek(master_key, f"sstcrypt-kek:{self.name}".encode("utf-8"))

    def wrap_key(self, master_key: bytes, key: bytes) -> bytes:
        """Encrypt ``key`` under ``master_key``."""
        if len(key) != self.key_length:
            raise ValueError(
                f"{self.name} expects a {self.key_length}-byte key, got {len(key)} bytes"
            )
        return aes_key_wrap(self._kek(master_key), bytes(key))

    def unwrap_key(self, master_key: bytes, wrapped: bytes) -> bytes:
        """Recover a data key; checks length and the RFC 3394 integrity value."""
        if len(wrapped) != self.wrapped_length:
            raise MalformedTrailer(
                f"wrapped key for {self.name} must be {self.wrapped_length} bytes, "
                f"got {len(wrapped)}"
            )
        try:
            key = aes_key_unwrap(self._kek(master_key), bytes(wrapped))
        except InvalidUnwrap as e:
            raise UnwrapIntegrityFailure(
                "wrapped data key failed integrity check (corrupted or wrong master key)"
            ) from e
        if len(key) != self.key_length:
            raise UnwrapIntegrityFailure("unwrapped data key has the wrong length")
        return key

    def encrypt_block(self, key: bytes, seed: bytes, block_index: int, data: bytes) -> bytes:
        return self._encrypt(bytes(key), self.derive_iv(seed, block_index), block_index, data)

    def decrypt_block(self, key: bytes, seed: bytes, block_index: int, data: bytes) -> bytes:
        return self._decrypt(bytes(key), self.derive_iv(seed, block_index), block_index, data)

    def _encrypt(self, key: bytes, iv: bytes, block_index: int, data: bytes) -> bytes:
        raise NotImplementedError

    def _decrypt(self, key: bytes, iv: bytes, block_index: int, data: bytes) -> bytes:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name} code={self.code}>"


class AesCtrCipher(BlockCipher):
    """AES in counter mode. Unauthenticated; the block checksum layer catches corruption."""

    def __init__(self, name: str, code: int, key_length: int):
        self.name = name
        self.code = code
        self.key_length = key_length

    def _transform(self, key: bytes, iv: bytes, data: bytes) -> bytes:
        ctx = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
        return ctx.update(data) + ctx.finalize()

    def _encrypt(self, key, iv, block_index, data):
        return self._transform(key, iv, data)

    def _decrypt(self, key, iv, block_index, data):
        # CTR is symmetric
        return self._transform(key, iv, data)


class AesGcmCipher(BlockCipher):
    """AES-256-GCM with the block number bound in as associated data."""

    name = "AESGCM"
    code = 3
    key_length = 32
    iv_length = 12
    authenticated = True

    @staticmethod
    def _ad(block_index: int) -> bytes:
        return f"block:{block_index}".encode("utf-8")

    def _encrypt(self, key, iv, block_index, data):
        return AESGCM(key).encrypt(iv, data, self._ad(block_index))

    def _decrypt(self, key, iv, block_index, data):
        try:
            return AESGCM(key).decrypt(iv, data, self._ad(block_index))
        except InvalidTag as e:
            raise BlockIntegrityFailure(f"block {block_index} failed authentication") from e


_registry_lock = threading.Lock()
_BY_NAME: Dict[str, BlockCipher] = {}
_BY_CODE: Dict[int, BlockCipher] = {}


def register_cipher(cipher: BlockCipher) -> None:
    """Add an algorithm to the registry; names and codes must be unique."""
    if cipher.code == NO_ENCRYPTION or not 0 < cipher.code < 0x10000:
        raise ValueError(f"invalid cipher code {cipher.code}")
    if not cipher.name:
        raise ValueError("cipher needs a name")
    key = cipher.name.upper()
    with _registry_lock:
        if key in _BY_NAME:
            raise ValueError(f"cipher {cipher.name!r} already registered")
        if cipher.code in _BY_CODE:
            raise ValueError(f"cipher code {cipher.code} already registered")
        _BY_NAME[key] = cipher
        _BY_CODE[cipher.code] = cipher


def unregister_cipher(name: str) -> None:
    with _registry_lock:
        cipher = _BY_NAME.pop(name.upper(), None)
        if cipher is not None:
            _BY_CODE.pop(cipher.code, None)


def get_cipher(algorithm: Union[str, int, BlockCipher]) -> BlockCipher:
    """Look up a cipher by name, trailer code, or pass an instance through."""
    if isinstance(algorithm, BlockCipher):
        return algorithm
    if isinstance(algorithm, int):
        cipher = _BY_CODE.get(algorithm)
    elif isinstance(algorithm, str):
        cipher = _BY_NAME.get(algorithm.upper())
    else:
        cipher = None
    if cipher is None:
        raise UnsupportedAlgorithm(algorithm)
    return cipher


def available_ciphers() -> List[str]:
    return sorted(c.name for c in _BY_NAME.values())


def key_length(algorithm: Union[str, int, BlockCipher]) -> int:
    return get_cipher(algorithm).key_length


DEFAULT_ALGORITHM = "AES"

register_cipher(AesCtrCipher("AES", 1, 16))
register_cipher(AesCtrCipher("AES256", 2, 32))
register_cipher(AesGcmCipher())
