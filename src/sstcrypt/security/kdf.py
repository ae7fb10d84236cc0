import hashlib

from argon2.low_level import Type, hash_secret_raw


def alias_salt(salt: bytes, alias: str, length: int = 16) -> bytes:
    """Bind a shared salt to one key alias so each alias derives a distinct key."""
    h = hashlib.sha256()
    h.update(salt)
    h.update(alias.encode("utf-8"))
    return h.digest()[:length]


def derive_master_key(
    password: bytes,
    salt: bytes,
    time_cost: int = 3,
    memory_cost: int = 65536,
    parallelism: int = 1,
    key_len: int = 32,
) -> bytes:
    """
    Derive a master key from a passphrase using Argon2id.
    Returns raw derived key bytes.
    """
    if isinstance(password, str):
        password = password.encode("utf-8")

    return hash_secret_raw(
        secret=password,
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=key_len,
        type=Type.ID,
    )
