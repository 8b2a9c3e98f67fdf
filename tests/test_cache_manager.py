"""
Tests for CacheManager.

Tests cover:
- Cache-aside lookups and batching of misses
- TTL expiry, forced refresh and pruning
- Persistence across instances and failure atomicity
- Offline mode, cancellation and lifecycle
"""
import os
import threading
from unittest.mock import patch

import pytest

from keybase_keeper.cache.manager import CacheManager
from keybase_keeper.crypto.keys import KeyPair
from keybase_keeper.exceptions import (
    InvalidArgument,
    NotFound,
    Unavailable,
    DeadlineExceeded,
    InternalError,
)


class TestLookup:
    """Tests for get_public_keys()."""

    def test_miss_then_hit(self, manager, resolver, alice):
        """Test the first lookup fetches and the second is cached."""
        first = manager.get_public_keys(["alice"])
        second = manager.get_public_keys(["alice"])
        assert first["alice"].public_key == alice.public_key
        assert first["alice"].key_id == alice.kid
        assert second == first
        assert len(resolver.calls) == 1

    def test_result_covers_requested_only(self, manager):
        """Test only requested users are returned."""
        manager.get_public_keys(["alice", "bob"])
        result = manager.get_public_keys(["bob"])
        assert set(result) == {"bob"}

    def test_misses_are_batched(self, manager, resolver):
        """Test only the missing users are fetched, together."""
        manager.get_public_keys(["alice"])
        manager.get_public_keys(["alice", "bob", "carol"])
        assert resolver.calls == [{"alice"}, {"bob", "carol"}]

    def test_record_timestamps(self, manager, clock, cache_config):
        """Test fetched_at and expires_at of a new record."""
        record = manager.get_public_key("alice")
        assert record.fetched_at == clock.now
        assert record.expires_at == clock.now + cache_config.ttl

    def test_expired_entry_is_refetched(self, manager, resolver, clock):
        """Test an entry is refetched at its expiry time."""
        manager.get_public_keys(["alice"])
        clock.advance(minutes=59)
        manager.get_public_keys(["alice"])
        assert len(resolver.calls) == 1
        clock.advance(minutes=1)  # exactly at expires_at
        manager.get_public_keys(["alice"])
        assert len(resolver.calls) == 2

    @pytest.mark.parametrize("usernames", [[], [""]])
    def test_invalid_usernames(self, manager, resolver, usernames):
        """Test invalid input is rejected before any fetch."""
        with pytest.raises(InvalidArgument):
            manager.get_public_keys(usernames)
        assert resolver.calls == []

    def test_unknown_user_fails_whole_call(self, manager, cache_path):
        """Test one unknown user fails the call and caches nothing."""
        with pytest.raises(NotFound):
            manager.get_public_keys(["alice", "mallory"])
        assert manager.stats().total_entries == 0
        assert not os.path.exists(cache_path)

    def test_resolver_unavailable(self, manager, resolver):
        """Test resolver errors are passed through."""
        resolver.error = Unavailable("service down")
        with pytest.raises(Unavailable):
            manager.get_public_keys(["alice"])

    def test_unexpected_resolver_error_is_unavailable(self, manager, resolver):
        """Test unexpected resolver errors become Unavailable."""
        resolver.error = OSError("connection reset")
        with pytest.raises(Unavailable, match="connection reset") as exc_info:
            manager.get_public_keys(["alice"])
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_resolver_missing_user_in_result(self, cache_config, clock, alice):
        """Test a user missing from the resolver result is NotFound."""
        class PartialResolver:
            def resolve(self, usernames, **kwargs):
                return {"alice": (alice.public_key, alice.kid)}

        with CacheManager(cache_config, resolver=PartialResolver(), clock=clock) as mgr:
            with pytest.raises(NotFound, match="bob"):
                mgr.get_public_keys(["alice", "bob"])

    def test_cancelled_before_resolve(self, manager, resolver):
        """Test a cancelled lookup does not fetch."""
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DeadlineExceeded):
            manager.get_public_keys(["alice"], cancel=cancel)
        assert resolver.calls == []

    def test_cached_hit_ignores_cancellation(self, manager):
        """Test cached entries are served even when cancelled."""
        manager.get_public_keys(["alice"])
        cancel = threading.Event()
        cancel.set()
        assert "alice" in manager.get_public_keys(["alice"], cancel=cancel)


class TestRefresh:
    """Tests for refresh_user()."""

    def test_refresh_always_resolves(self, manager, resolver, clock):
        """Test refresh fetches even when cached."""
        manager.get_public_keys(["alice"])
        clock.advance(minutes=5)
        record = manager.refresh_user("alice")
        assert len(resolver.calls) == 2
        assert record.fetched_at == clock.now

    def test_refresh_picks_up_rotated_key(self, manager, resolver):
        """Test refresh stores a rotated key."""
        manager.get_public_keys(["alice"])
        rotated = KeyPair.generate()
        resolver.keys["alice"] = rotated
        assert manager.refresh_user("alice").public_key == rotated.public_key
        assert manager.get_public_key("alice").public_key == rotated.public_key

    def test_refresh_users_batch(self, manager, resolver):
        """Test refreshing several users in one fetch."""
        records = manager.refresh_users(["alice", "bob"])
        assert set(records) == {"alice", "bob"}
        assert resolver.calls == [{"alice", "bob"}]


class TestPruneAndStats:
    """Tests for prune_expired() and stats()."""

    def _populate(self, manager, clock):
        manager.get_public_keys(["alice"])
        clock.advance(minutes=30)
        manager.get_public_keys(["bob"])
        clock.advance(minutes=45)

    def test_stats(self, manager, clock):
        """Test valid and expired counts."""
        self._populate(manager, clock)
        stats = manager.stats()
        assert stats.total_entries == 2
        assert stats.valid_entries == 1
        assert stats.expired_entries == 1

    def test_stats_empty(self, manager):
        """Test stats of an empty cache."""
        stats = manager.stats()
        assert (stats.total_entries, stats.valid_entries, stats.expired_entries) == (0, 0, 0)

    def test_prune(self, manager, clock):
        """Test pruning removes expired entries."""
        self._populate(manager, clock)
        assert manager.prune_expired() == 1
        assert set(manager.snapshot()) == {"bob"}

    def test_second_prune_writes_nothing(self, manager, clock):
        """Test a prune with nothing to remove skips the write."""
        self._populate(manager, clock)
        manager.prune_expired()
        with patch("keybase_keeper.cache.store.CacheStore.save") as save:
            assert manager.prune_expired() == 0
        save.assert_not_called()

    def test_pruned_state_is_persisted(self, manager, clock, cache_config, resolver):
        """Test pruning is saved to disk."""
        self._populate(manager, clock)
        manager.prune_expired()
        reloaded = CacheManager(cache_config, resolver=resolver, clock=clock)
        assert set(reloaded.snapshot()) == {"bob"}
        reloaded.close()


class TestInvalidate:

    def test_invalidate_user(self, manager, resolver):
        """Test an invalidated user is fetched again."""
        manager.get_public_keys(["alice", "bob"])
        assert manager.invalidate_user("alice") is True
        manager.get_public_keys(["alice"])
        assert resolver.calls[-1] == {"alice"}

    def test_invalidate_unknown_writes_nothing(self, manager):
        """Test invalidating an unknown user skips the write."""
        with patch("keybase_keeper.cache.store.CacheStore.save") as save:
            assert manager.invalidate_user("nobody") is False
        save.assert_not_called()

    def test_invalidate_all(self, manager):
        """Test clearing every entry."""
        manager.get_public_keys(["alice", "bob"])
        assert manager.invalidate_all() == 2
        assert manager.stats().total_entries == 0


class TestPersistence:
    """Entries survive a restart."""

    def test_reload(self, manager, cache_config, resolver, clock):
        """Test a new manager serves entries from disk."""
        original = manager.get_public_keys(["alice", "bob"])
        manager.close()
        calls = len(resolver.calls)

        reloaded = CacheManager(cache_config, resolver=resolver, clock=clock)
        assert reloaded.get_public_keys(["alice", "bob"]) == original
        assert len(resolver.calls) == calls
        reloaded.close()

    def test_file_permissions(self, manager, cache_path):
        """Test the cache file is private to the owner."""
        manager.get_public_keys(["alice"])
        assert (os.stat(cache_path).st_mode & 0o777) == 0o600

    def test_corrupt_file_fails_construction(self, cache_config, resolver, cache_path):
        """Test a corrupt cache file fails construction."""
        os.makedirs(os.path.dirname(cache_path), exist_ok=True)
        with open(cache_path, "w") as fp:
            fp.write("{broken")
        with pytest.raises(InternalError):
            CacheManager(cache_config, resolver=resolver)

    def test_write_failure_leaves_cache_unchanged(self, manager):
        """Test a failed save discards the new entries."""
        with patch(
            "keybase_keeper.cache.store.os.replace", side_effect=OSError("read-only"),
        ):
            with pytest.raises(InternalError):
                manager.get_public_keys(["alice"])
        assert manager.snapshot() == {}

    def test_concurrent_lookups(self, manager, resolver, cache_config, clock):
        """Test lookups from several threads."""
        errors = []

        def worker(name):
            try:
                for _ in range(5):
                    manager.get_public_keys([name])
            except Exception as err:  # pragma: no cover
                errors.append(err)

        threads = [
            threading.Thread(target=worker, args=(name,))
            for name in ("alice", "bob", "carol") * 3
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        reloaded = CacheManager(cache_config, resolver=resolver, clock=clock)
        assert set(reloaded.snapshot()) == {"alice", "bob", "carol"}
        reloaded.close()


class TestOfflineMode:

    def test_offline_miss_is_not_found(self, cache_config, resolver, clock):
        """Test offline misses are NotFound without a fetch."""
        config = cache_config.model_copy(update={"offline_mode": True})
        with CacheManager(config, resolver=resolver, clock=clock) as mgr:
            with pytest.raises(NotFound, match="offline"):
                mgr.get_public_keys(["alice"])
        assert resolver.calls == []

    def test_offline_serves_cached(self, manager, resolver):
        """Test offline mode serves cached entries only."""
        manager.get_public_keys(["alice"])
        manager.offline_mode = True
        assert "alice" in manager.get_public_keys(["alice"])
        with pytest.raises(Unavailable):
            manager.refresh_user("alice")
        assert len(resolver.calls) == 1

    def test_offline_without_resolver(self, cache_config):
        """Test offline mode creates no API client."""
        config = cache_config.model_copy(update={"offline_mode": True})
        with patch("keybase_keeper.cache.manager.KeybaseClient") as client_cls:
            CacheManager(config).close()
        client_cls.assert_not_called()


class TestLifecycle:

    def test_close_is_idempotent(self, manager):
        """Test closing twice."""
        manager.close()
        manager.close()
        assert manager.closed

    @pytest.mark.parametrize("call", [
        lambda m: m.get_public_keys(["alice"]),
        lambda m: m.refresh_user("alice"),
        lambda m: m.invalidate_user("alice"),
        lambda m: m.invalidate_all(),
        lambda m: m.prune_expired(),
    ])
    def test_operations_after_close(self, manager, call):
        """Test operations fail after close."""
        manager.close()
        with pytest.raises(InternalError, match="closed"):
            call(manager)

    def test_owned_resolver_is_closed(self, cache_config):
        """Test an owned API client is closed once."""
        with patch("keybase_keeper.cache.manager.KeybaseClient") as client_cls:
            mgr = CacheManager(cache_config)
            mgr.close()
            mgr.close()
        client_cls.assert_called_once_with(base_url=cache_config.base_url)
        client_cls.return_value.close.assert_called_once()

    def test_injected_resolver_is_not_closed(self, cache_config):
        """Test a supplied resolver is left open."""
        class ClosableResolver:
            closed = False

            def resolve(self, usernames, **kwargs):
                return {}

            def close(self):
                self.closed = True

        resolver = ClosableResolver()
        CacheManager(cache_config, resolver=resolver).close()
        assert resolver.closed is False
