"""Keybase Keeper — encrypted secrets for Keybase users.

Security Note (Threat Model):
    Public keys are fetched from the Keybase API and cached on disk for a
    bounded TTL. Anyone able to write the cache file can substitute a
    recipient key until the entry expires; the file is therefore created
    with mode 0600. Plaintext exists in process memory during encryption
    and decryption. Verifying Keybase identity proofs is out of scope.
"""
from .version import __version__
from .exceptions import (
    ErrorCode,
    KeeperError,
    InvalidArgument,
    NotFound,
    DeadlineExceeded,
    Unavailable,
    InternalError,
)
from .config import CacheConfig, KeeperConfig
from .crypto.keys import KeyPair, Keyring
from .cache.manager import CacheManager
from .cache.store import CachedKeyRecord, CacheStats
from .api.client import KeybaseClient, ResolvedKey
from .keeper import Keeper
from .rotation import detect_rotation, re_encrypt, rotate_ciphertexts

__all__ = [
    "__version__",
    "ErrorCode",
    "KeeperError",
    "InvalidArgument",
    "NotFound",
    "DeadlineExceeded",
    "Unavailable",
    "InternalError",
    "CacheConfig",
    "KeeperConfig",
    "KeyPair",
    "Keyring",
    "CacheManager",
    "CachedKeyRecord",
    "CacheStats",
    "KeybaseClient",
    "ResolvedKey",
    "Keeper",
    "detect_rotation",
    "re_encrypt",
    "rotate_ciphertexts",
]
