"""Shared fixtures: key pairs, an in-memory resolver and a controllable clock."""
from datetime import datetime, timedelta, timezone

import pytest

from keybase_keeper.api.client import ResolvedKey
from keybase_keeper.cache.manager import CacheManager
from keybase_keeper.config import CacheConfig
from keybase_keeper.crypto.keys import KeyPair
from keybase_keeper.exceptions import NotFound


class FakeResolver:
    """Resolver double that serves keys from a dict and records every call."""

    def __init__(self, keys=None, error=None):
        self.keys = dict(keys or {})
        self.error = error
        self.calls = []

    def resolve(self, usernames, timeout, max_retries, retry_delay, cancel=None):
        self.calls.append(set(usernames))
        if self.error is not None:
            raise self.error
        result = {}
        for name in usernames:
            if name not in self.keys:
                raise NotFound("user not found", username=name, operation="resolve")
            pair = self.keys[name]
            result[name] = ResolvedKey(
                username=name, public_key=pair.public_key, key_id=pair.kid,
            )
        return result


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def alice():
    return KeyPair.generate()


@pytest.fixture
def bob():
    return KeyPair.generate()


@pytest.fixture
def carol():
    return KeyPair.generate()


@pytest.fixture
def resolver(alice, bob, carol):
    return FakeResolver({"alice": alice, "bob": bob, "carol": carol})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_path(tmp_path):
    return str(tmp_path / "keys" / "keyring_cache.json")


@pytest.fixture
def cache_config(cache_path):
    return CacheConfig(
        cache_path=cache_path,
        ttl=timedelta(hours=1),
        max_retries=1,
        retry_delay=timedelta(milliseconds=1),
    )


@pytest.fixture
def manager(cache_config, resolver, clock):
    mgr = CacheManager(cache_config, resolver=resolver, clock=clock)
    yield mgr
    mgr.close()
