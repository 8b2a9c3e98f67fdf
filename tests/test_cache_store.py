"""
Tests for CachedKeyRecord and CacheStore persistence.
"""
import os
import base64
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import orjson
import pytest
from pydantic import ValidationError

from keybase_keeper.cache.store import CacheStore, CachedKeyRecord
from keybase_keeper.exceptions import InternalError

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_record(username="alice", public_key=b"\x01" * 32, ttl=timedelta(hours=1)):
    return CachedKeyRecord(
        username=username,
        public_key=public_key,
        key_id=f"kid-{username}",
        fetched_at=NOW,
        expires_at=NOW + ttl,
    )


class TestCachedKeyRecord:
    """Tests for record validation and validity."""

    def test_valid_until_expiry(self):
        """Test a record is valid strictly before expires_at."""
        record = make_record()
        assert record.is_valid(NOW)
        assert record.is_valid(record.expires_at - timedelta(microseconds=1))
        assert not record.is_valid(record.expires_at)
        assert record.is_expired(record.expires_at + timedelta(seconds=1))

    def test_expiry_must_follow_fetch(self):
        """Test expires_at must be after fetched_at."""
        with pytest.raises(ValidationError, match="expires_at"):
            CachedKeyRecord(
                username="alice",
                public_key=b"k" * 32,
                key_id="kid",
                fetched_at=NOW,
                expires_at=NOW,
            )

    def test_empty_username_rejected(self):
        """Test a record needs a username."""
        with pytest.raises(ValidationError):
            make_record(username="")

    def test_base64_public_key(self):
        """Test public keys load from base64 text."""
        encoded = base64.b64encode(b"\x02" * 32).decode()
        record = CachedKeyRecord(
            username="bob",
            public_key=encoded,
            key_id="kid",
            fetched_at=NOW,
            expires_at=NOW + timedelta(minutes=5),
        )
        assert record.public_key == b"\x02" * 32

    def test_naive_timestamps_are_utc(self):
        """Test naive timestamps are taken as UTC."""
        record = CachedKeyRecord(
            username="bob",
            public_key=b"\x02" * 32,
            key_id="kid",
            fetched_at=datetime(2024, 1, 1),
            expires_at=datetime(2024, 1, 2),
        )
        assert record.fetched_at.tzinfo is timezone.utc

    def test_serialized_form(self):
        """Test the JSON form of a record."""
        data = make_record().model_dump(mode="json")
        assert data["public_key"] == base64.b64encode(b"\x01" * 32).decode()
        assert data["fetched_at"] == NOW.isoformat()


class TestCacheStore:
    """Tests for loading and saving snapshots."""

    def test_missing_file_is_empty(self, tmp_path):
        """Test a missing file loads as an empty cache."""
        store = CacheStore(str(tmp_path / "absent.json"))
        store.load()
        assert len(store) == 0

    def test_empty_file_is_empty(self, tmp_path):
        """Test an empty file loads as an empty cache."""
        path = tmp_path / "cache.json"
        path.write_bytes(b"")
        store = CacheStore(str(path))
        store.load()
        assert store.entries == {}

    def test_round_trip(self, tmp_path):
        """Test committed entries load back unchanged."""
        path = str(tmp_path / "nested" / "cache.json")
        store = CacheStore(path)
        entries = {"alice": make_record("alice"), "bob": make_record("bob", b"\x03" * 32)}
        store.commit(entries)

        reloaded = CacheStore(path)
        reloaded.load()
        assert reloaded.entries == entries

    def test_file_layout(self, tmp_path):
        """Test the on-disk document layout."""
        path = tmp_path / "cache.json"
        CacheStore(str(path)).commit({"alice": make_record()})
        document = orjson.loads(path.read_bytes())
        entry = document["entries"]["alice"]
        assert set(entry) == {"username", "public_key", "key_id", "fetched_at", "expires_at"}
        assert (os.stat(path).st_mode & 0o777) == 0o600

    def test_unknown_fields_ignored(self, tmp_path):
        """Test extra fields from newer versions are ignored."""
        path = tmp_path / "cache.json"
        record = make_record().model_dump(mode="json")
        record["comment"] = "added by a newer version"
        path.write_bytes(orjson.dumps({"entries": {"alice": record}, "version": 9}))
        store = CacheStore(str(path))
        store.load()
        assert store.get("alice").key_id == "kid-alice"

    @pytest.mark.parametrize("content", [
        b"{not json",
        b"[]",
        b'{"entries": []}',
        b'{"entries": {"alice": {"username": "alice"}}}',
    ])
    def test_malformed_file(self, tmp_path, content):
        """Test a corrupt cache file fails to load."""
        path = tmp_path / "cache.json"
        path.write_bytes(content)
        with pytest.raises(InternalError, match="failed to parse"):
            CacheStore(str(path)).load()

    def test_mismatched_entry_key(self, tmp_path):
        """Test an entry filed under another username is rejected."""
        path = tmp_path / "cache.json"
        record = make_record("bob").model_dump(mode="json")
        path.write_bytes(orjson.dumps({"entries": {"alice": record}}))
        with pytest.raises(InternalError):
            CacheStore(str(path)).load()

    def test_failed_write_keeps_memory_state(self, tmp_path):
        """Test a failed write leaves the entries untouched."""
        store = CacheStore(str(tmp_path / "cache.json"))
        store.commit({"alice": make_record()})
        with patch("keybase_keeper.cache.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(InternalError, match="failed to write"):
                store.commit({})
        assert list(store.entries) == ["alice"]
        assert [p.name for p in tmp_path.iterdir()] == ["cache.json"]

    def test_stats_and_expired(self):
        """Test counting and listing expired entries."""
        store = CacheStore("unused.json")
        store.entries = {
            "alice": make_record("alice", ttl=timedelta(minutes=10)),
            "bob": make_record("bob", ttl=timedelta(hours=2)),
        }
        later = NOW + timedelta(hours=1)
        assert store.expired(later) == ["alice"]
        stats = store.stats(later)
        assert (stats.total_entries, stats.valid_entries, stats.expired_entries) == (2, 1, 1)
