"""Fresh data encryption keys (DEKs) and IV seeds, one draw per store file."""
import os

from .ciphers import get_cipher, key_length


class DataKeyGenerator:
    """Draws keys from the platform CSPRNG.

    ``os.urandom`` is safe for concurrent callers, so no locking happens here and
    nothing is cached: every call is an independent draw.
    """

    def generate(self, algorithm) -> bytes:
        """Return ``key_length(algorithm)`` random bytes.

        Raises UnsupportedAlgorithm if the algorithm is not registered.
        """
        return os.urandom(key_length(algorithm))

    def generate_seed(self, algorithm) -> bytes:
        """Return a random per-file IV seed sized for the algorithm."""
        return os.urandom(get_cipher(algorithm).seed_length)


_default_generator = DataKeyGenerator()


def get_generator() -> DataKeyGenerator:
    return _default_generator


def generate_data_key(algorithm) -> bytes:
    return _default_generator.generate(algorithm)
