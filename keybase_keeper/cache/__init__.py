"""Public key cache with TTL expiry and an atomic on-disk snapshot."""

from .store import CacheStore, CachedKeyRecord, CacheStats
from .manager import CacheManager

__all__ = ["CacheStore", "CachedKeyRecord", "CacheStats", "CacheManager"]
