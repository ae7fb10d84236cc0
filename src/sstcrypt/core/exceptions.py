"""
Exceptions for sstcrypt
Everything derives from SstCryptError so callers have one general error catcher,
while the subclasses keep "key service down", "key rotated" and "data corrupted"
apart.
"""


class SstCryptError(Exception):
    # general container for errors
    pass


class ConfigurationError(SstCryptError):
    # raised when the encryption configuration is incomplete or inconsistent
    pass


class KeyProviderError(SstCryptError):
    # raised by key providers (see security/providers.py)
    def __init__(self, alias: str, message: str = ""):
        self.alias = alias
        super().__init__(message or alias)


class KeyNotFound(KeyProviderError):
    # the provider is reachable but does not know the alias
    pass


class ProviderUnavailable(KeyProviderError):
    # the backing key store cannot be reached or read
    pass


class EncryptionError(SstCryptError):
    # general container for keying and cipher failures
    pass


class MasterKeyUnresolvable(EncryptionError):
    """Raised when the master key for an alias cannot be obtained.

    ``reason`` is one of ``"not-found"`` (alias unknown, e.g. rotated out),
    ``"unavailable"`` (provider down or not configured) or ``"incompatible"``
    (the provider returned key material the cipher cannot use).
    """

    NOT_FOUND = "not-found"
    UNAVAILABLE = "unavailable"
    INCOMPATIBLE = "incompatible"

    def __init__(self, alias: str, reason: str, message: str = ""):
        self.alias = alias
        self.reason = reason
        super().__init__(message or f"master key {alias!r} unresolvable ({reason})")


class UnwrapIntegrityFailure(EncryptionError):
    # wrapped DEK did not decrypt to a well-formed key under the resolved master key
    pass


class UnsupportedAlgorithm(EncryptionError):
    # algorithm name or code not present in the cipher registry
    def __init__(self, algorithm):
        self.algorithm = algorithm
        super().__init__(f"Unsupported algorithm: {algorithm!r}")


class BlockIntegrityFailure(EncryptionError):
    # raised by authenticated ciphers when a block fails its tag check
    pass


class StoreFileError(SstCryptError):
    # raised if a store file cannot be written or read
    pass


class MalformedTrailer(StoreFileError):
    # trailer or footer bytes are truncated, unknown or inconsistent
    pass
