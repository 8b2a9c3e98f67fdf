"""
Cache Manager — cache-aside public key resolution with TTL and persistence.

Lookup order for ``get_public_keys()``: valid in-memory record → one
batched resolver call for every miss or expired record → whole-call error.

Concurrency:
    A single ``threading.Lock`` guards the store and its snapshot writes.
    Resolver calls run without the lock, so lookups for unrelated users are
    never blocked by a network fetch. Two threads missing on the same user
    may both call the resolver; the last commit wins.

Security Note:
    Public keys are not secret, but never log them; log usernames and
    key IDs only.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Optional
from collections.abc import Callable, Iterable

from ..api.client import KeybaseClient
from ..config import CacheConfig
from ..exceptions import (
    KeeperError,
    InvalidArgument,
    NotFound,
    Unavailable,
    InternalError,
)
from ..utils import check_cancelled
from .store import CacheStore, CacheStats, CachedKeyRecord, utcnow

logger = logging.getLogger("keybase.cache")


class CacheManager:
    """Owns the public key cache and its backing file.

    Each instance is independent: construct one per cache path and release
    it with ``close()`` (or use it as a context manager).
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        resolver: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config or CacheConfig()
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._offline = self._config.offline_mode
        self._store = CacheStore(self._config.cache_path)
        self._store.load()
        if resolver is None and not self._offline:
            resolver = KeybaseClient(base_url=self._config.base_url)
            self._owns_resolver = True
        else:
            self._owns_resolver = False
        self._resolver = resolver
        self._closed = False
        logger.info(
            "CacheManager initialized at %s (%d entries, offline=%s)",
            self._config.cache_path, len(self._store), self._offline,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise InternalError("cache manager is closed", operation=operation)

    @staticmethod
    def _requested(usernames: Iterable[str], operation: str) -> set[str]:
        if isinstance(usernames, str):
            usernames = [usernames]
        requested = set(usernames)
        if not requested:
            raise InvalidArgument("no usernames provided", operation=operation)
        for name in requested:
            if not isinstance(name, str) or not name:
                raise InvalidArgument(
                    f"invalid username: {name!r}", operation=operation,
                )
        return requested

    @staticmethod
    def _unpack(value: Any) -> tuple[bytes, str]:
        """Accept a ``(public_key, key_id)`` pair or a ResolvedKey-like object."""
        if isinstance(value, tuple):
            public_key, key_id = value
        else:
            public_key, key_id = value.public_key, value.key_id
        return bytes(public_key), str(key_id)

    def _resolve(
        self,
        usernames: set[str],
        operation: str,
        cancel: Optional[threading.Event],
    ) -> dict[str, tuple[bytes, str]]:
        """Call the resolver for ``usernames``; never holds the store lock."""
        if self._offline or self._resolver is None:
            raise Unavailable(
                "offline mode: cannot fetch keys from the identity provider",
                username=",".join(sorted(usernames)),
                operation=operation,
            )
        check_cancelled(cancel, operation)
        cfg = self._config
        try:
            resolved = self._resolver.resolve(
                set(usernames),
                timeout=cfg.api_timeout,
                max_retries=cfg.max_retries,
                retry_delay=cfg.retry_delay,
                cancel=cancel,
            )
        except KeeperError:
            raise
        except Exception as err:
            raise Unavailable(
                f"key resolver failed: {err}",
                username=",".join(sorted(usernames)),
                operation=operation,
            ) from err

        missing = sorted(name for name in usernames if name not in resolved)
        if missing:
            raise NotFound(
                "resolver returned no key",
                username=",".join(missing),
                operation=operation,
            )
        return {name: self._unpack(resolved[name]) for name in usernames}

    def _commit(self, fetched: dict[str, tuple[bytes, str]]) -> dict[str, CachedKeyRecord]:
        """Insert freshly resolved keys and persist the store."""
        now = self._clock()
        expires = now + self._config.ttl
        records = {
            name: CachedKeyRecord(
                username=name,
                public_key=public_key,
                key_id=key_id,
                fetched_at=now,
                expires_at=expires,
            )
            for name, (public_key, key_id) in fetched.items()
        }
        with self._lock:
            self._ensure_open("commit")
            entries = dict(self._store.entries)
            entries.update(records)
            self._store.commit(entries)
        for name, record in records.items():
            logger.debug("Cached key for user=%s kid=%s", name, record.key_id)
        return records

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_public_keys(
        self,
        usernames: Iterable[str],
        cancel: Optional[threading.Event] = None,
    ) -> dict[str, CachedKeyRecord]:
        """Return a record for every requested username.

        Valid cached records are served from memory; all other usernames are
        resolved with a single resolver call and then cached.

        Args:
            usernames: Usernames to look up (case-sensitive).
            cancel: Optional event that aborts an in-flight resolution.

        Returns:
            Mapping covering exactly the requested usernames.

        Raises:
            InvalidArgument: If no usernames (or an empty one) are given.
            NotFound: If a user is unknown (or missing while offline).
            Unavailable: If the resolver keeps failing transiently.
            DeadlineExceeded: On timeout or cancellation.
            InternalError: If the updated cache cannot be persisted.
        """
        requested = self._requested(usernames, "get_public_keys")
        self._ensure_open("get_public_keys")
        now = self._clock()
        found: dict[str, CachedKeyRecord] = {}
        with self._lock:
            for name in requested:
                record = self._store.get(name)
                if record is not None and record.is_valid(now):
                    found[name] = record
        missing = requested - found.keys()
        logger.debug(
            "Cache lookup: %d hit(s), %d miss(es)", len(found), len(missing),
        )
        if missing:
            if self._offline:
                raise NotFound(
                    "offline mode: public key not found in cache",
                    username=",".join(sorted(missing)),
                    operation="get_public_keys",
                )
            found.update(self._commit(self._resolve(missing, "get_public_keys", cancel)))
        return {name: found[name] for name in requested}

    def get_public_key(
        self,
        username: str,
        cancel: Optional[threading.Event] = None,
    ) -> CachedKeyRecord:
        """Single-user form of ``get_public_keys``."""
        return self.get_public_keys([username], cancel=cancel)[username]

    def refresh_user(
        self,
        username: str,
        cancel: Optional[threading.Event] = None,
    ) -> CachedKeyRecord:
        """Re-resolve ``username`` regardless of what the cache holds.

        Use when a key is suspected to be stale or rotated.
        """
        return self.refresh_users([username], cancel=cancel)[username]

    def refresh_users(
        self,
        usernames: Iterable[str],
        cancel: Optional[threading.Event] = None,
    ) -> dict[str, CachedKeyRecord]:
        """Re-resolve every username in one resolver call."""
        requested = self._requested(usernames, "refresh_user")
        self._ensure_open("refresh_user")
        records = self._commit(self._resolve(requested, "refresh_user", cancel))
        logger.info("Refreshed %d key(s) from the identity provider", len(records))
        return records

    def invalidate_user(self, username: str) -> bool:
        """Drop ``username`` from the cache. Returns True if it was cached."""
        with self._lock:
            self._ensure_open("invalidate_user")
            if username not in self._store.entries:
                return False
            entries = dict(self._store.entries)
            del entries[username]
            self._store.commit(entries)
        logger.debug("Invalidated cached key for user=%s", username)
        return True

    def invalidate_all(self) -> int:
        """Drop every cached entry. Returns the number removed."""
        with self._lock:
            self._ensure_open("invalidate_all")
            removed = len(self._store)
            if removed:
                self._store.commit({})
        logger.info("Invalidated %d cached key(s)", removed)
        return removed

    def prune_expired(self) -> int:
        """Remove entries with ``expires_at <= now``.

        Nothing is written when no entry has expired.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            self._ensure_open("prune_expired")
            expired = self._store.expired(now)
            if not expired:
                return 0
            entries = {
                name: record
                for name, record in self._store.entries.items()
                if name not in expired
            }
            self._store.commit(entries)
        logger.info("Pruned %d expired cache entries", len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        """Count total, valid and expired entries at the current time."""
        now = self._clock()
        with self._lock:
            return self._store.stats(now)

    def snapshot(self) -> dict[str, CachedKeyRecord]:
        """Return a copy of the in-memory entries."""
        with self._lock:
            return dict(self._store.entries)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def offline_mode(self) -> bool:
        with self._lock:
            return self._offline

    @offline_mode.setter
    def offline_mode(self, offline: bool) -> None:
        with self._lock:
            self._offline = offline

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release held resources. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._owns_resolver and hasattr(self._resolver, "close"):
            self._resolver.close()
        logger.debug("CacheManager at %s closed", self._config.cache_path)

    def __enter__(self) -> "CacheManager":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"<CacheManager path={self._config.cache_path!r} "
            f"entries={len(self._store)} offline={self._offline}>"
        )
