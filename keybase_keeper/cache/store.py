"""
Cache Store — cached key records and their on-disk snapshot.

Snapshot format (JSON):
    {"entries": {"<username>": {"username": ..., "public_key": <base64>,
                                "key_id": ..., "fetched_at": <ISO-8601>,
                                "expires_at": <ISO-8601>}}}

Snapshots are written to a temporary file in the target directory, fsynced
and renamed over the target, so readers never observe a partial write.
Unknown fields are ignored on load.

The store itself is not thread-safe; ``CacheManager`` serializes access.
"""
import os
import base64
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import orjson
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

from ..exceptions import InternalError

logger = logging.getLogger("keybase.cache")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CachedKeyRecord(BaseModel):
    """A resolved public key with its fetch and expiry timestamps."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    username: str = Field(min_length=1)
    public_key: bytes
    key_id: str
    fetched_at: datetime
    expires_at: datetime

    @field_validator("public_key", mode="before")
    @classmethod
    def decode_public_key(cls, v):
        """Accept raw bytes or the base64 text used in snapshots."""
        if isinstance(v, str):
            try:
                return base64.b64decode(v, validate=True)
            except ValueError as err:
                raise ValueError(f"public_key is not valid base64: {err}") from err
        return v

    @field_validator("fetched_at", "expires_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        """Naive timestamps are taken as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def validate_expiry(self) -> "CachedKeyRecord":
        if self.expires_at <= self.fetched_at:
            raise ValueError(
                f"expires_at ({self.expires_at.isoformat()}) must be after "
                f"fetched_at ({self.fetched_at.isoformat()})"
            )
        return self

    @field_serializer("public_key")
    def serialize_public_key(self, v: bytes) -> str:
        return base64.b64encode(v).decode("ascii")

    @field_serializer("fetched_at", "expires_at")
    def serialize_timestamp(self, v: datetime) -> str:
        return v.isoformat()

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """A record is valid iff ``now < expires_at``."""
        return (now or utcnow()) < self.expires_at

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return not self.is_valid(now)


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache occupancy; valid + expired == total."""

    total_entries: int
    valid_entries: int
    expired_entries: int


class CacheStore:
    """In-memory username → record mapping backed by a JSON snapshot file."""

    def __init__(self, path: str):
        self.path = path
        self.entries: dict[str, CachedKeyRecord] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Replace the in-memory entries with the snapshot on disk.

        A missing or empty file yields an empty store.

        Raises:
            InternalError: If the file exists but cannot be read or parsed.
        """
        try:
            with open(self.path, "rb") as fp:
                data = fp.read()
        except FileNotFoundError:
            self.entries = {}
            return
        except OSError as err:
            raise InternalError(
                f"failed to read cache file {self.path}: {err}", operation="load",
            ) from err

        if not data.strip():
            self.entries = {}
            return
        try:
            document = orjson.loads(data)
            raw_entries = document.get("entries", {})
            if not isinstance(raw_entries, dict):
                raise ValueError("'entries' must be an object")
            entries = {}
            for username, raw in raw_entries.items():
                record = CachedKeyRecord.model_validate(raw)
                if record.username != username:
                    raise ValueError(
                        f"entry key {username!r} does not match record username"
                    )
                entries[username] = record
        except (orjson.JSONDecodeError, ValidationError, ValueError, AttributeError) as err:
            raise InternalError(
                f"failed to parse cache file {self.path}: {err}", operation="load",
            ) from err
        self.entries = entries
        logger.debug("Loaded %d cache entries from %s", len(entries), self.path)

    def save(self, entries: Optional[dict] = None) -> None:
        """Atomically write ``entries`` (default: the current entries) to disk.

        Raises:
            InternalError: If the snapshot cannot be written.
        """
        if entries is None:
            entries = self.entries
        document = {
            "entries": {
                username: record.model_dump(mode="json")
                for username, record in entries.items()
            }
        }
        data = orjson.dumps(document, option=orjson.OPT_INDENT_2)
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, mode=0o700, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".keyring_cache.", suffix=".tmp", dir=directory,
            )
            with os.fdopen(fd, "wb") as fp:
                fp.write(data)
                fp.flush()
                os.fsync(fp.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as err:
            raise InternalError(
                f"failed to write cache file {self.path}: {err}", operation="save",
            ) from err
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    # ------------------------------------------------------------------
    # Queries and mutations
    # ------------------------------------------------------------------

    def commit(self, entries: dict) -> None:
        """Persist ``entries`` and only then make them the in-memory state."""
        self.save(entries)
        self.entries = entries

    def get(self, username: str) -> Optional[CachedKeyRecord]:
        return self.entries.get(username)

    def expired(self, now: datetime) -> list[str]:
        return [name for name, record in self.entries.items() if record.is_expired(now)]

    def stats(self, now: datetime) -> CacheStats:
        valid = sum(1 for record in self.entries.values() if record.is_valid(now))
        total = len(self.entries)
        return CacheStats(
            total_entries=total,
            valid_entries=valid,
            expired_entries=total - valid,
        )

    def __len__(self) -> int:
        return len(self.entries)
