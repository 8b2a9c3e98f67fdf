"""
Keeper Configuration — validated settings for the key cache and the Keeper.

Reads optional overrides from environment variables:
    KEYBASE_CACHE_PATH, KEYBASE_CACHE_TTL, KEYBASE_API_TIMEOUT,
    KEYBASE_MAX_RETRIES, KEYBASE_RETRY_DELAY, KEYBASE_API_URL,
    KEYBASE_OFFLINE, KEYBASE_STREAMING_THRESHOLD, KEYBASE_CIPHER_BACKEND,
    KEYBASE_RECIPIENTS, KEYBASE_ARMOR

Durations are ``timedelta`` values; numbers are accepted as seconds.
Recipients can also be given as a URL:
    keybase://alice,bob,carol?cache_ttl=86400&armor=false&cipher=chacha20
"""
import os
import re
import logging
from datetime import timedelta
from typing import Optional
from urllib.parse import urlsplit, parse_qs, urlencode

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("keybase.keeper")

DEFAULT_API_ENDPOINT = "https://keybase.io/_/api/1.0"
DEFAULT_CACHE_TTL = timedelta(hours=24)
DEFAULT_API_TIMEOUT = timedelta(seconds=30)
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = timedelta(seconds=1)
DEFAULT_STREAMING_THRESHOLD = 10 * 1024 * 1024  # 10 MiB
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1 MiB
MAX_CHUNK_SIZE = 16 * 1024 * 1024

_USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_]+")
_TRUE_VALUES = ("1", "true", "yes", "on")
_BOOL_TRUE = ("1", "t", "T", "TRUE", "true", "True")
_BOOL_FALSE = ("0", "f", "F", "FALSE", "false", "False")
_URL_PARAMETERS = ("cache_ttl", "armor", "cipher")


def default_cache_path() -> str:
    """Return the default cache file location under the user's config dir."""
    home = os.path.expanduser("~")
    if home == "~":
        home = "/tmp"
    return os.path.join(home, ".config", "keybase_keeper", "keyring_cache.json")


def validate_username(username: str) -> str:
    """Validate a Keybase username (alphanumerics and underscore).

    Raises:
        ValueError: If the username is empty or has invalid characters.
    """
    if not username:
        raise ValueError("username cannot be empty")
    if not _USERNAME_PATTERN.fullmatch(username):
        raise ValueError(f"username {username!r} contains invalid characters")
    return username


def parse_bool(name: str, value: str) -> bool:
    """Parse "1", "t", "true" (or "0", "f", "false") in lower, upper or title case.

    Raises:
        ValueError: If ``value`` is not a recognized boolean.
    """
    if value in _BOOL_TRUE:
        return True
    if value in _BOOL_FALSE:
        return False
    raise ValueError(f"invalid {name} parameter: {value!r} (expected true or false)")


def _positive(name: str, value: timedelta) -> timedelta:
    if value <= timedelta(0):
        raise ValueError(f"{name} must be a positive duration, got {value}")
    return value


class CacheConfig(BaseModel):
    """Validated public key cache configuration."""

    cache_path: str = Field(default_factory=default_cache_path)
    ttl: timedelta = DEFAULT_CACHE_TTL
    api_timeout: timedelta = DEFAULT_API_TIMEOUT
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_delay: timedelta = DEFAULT_RETRY_DELAY
    base_url: str = DEFAULT_API_ENDPOINT
    offline_mode: bool = False

    @field_validator("cache_path")
    @classmethod
    def validate_cache_path(cls, v: str) -> str:
        """Cache path must be a non-empty string."""
        if not v or not v.strip():
            raise ValueError("cache_path cannot be empty")
        return v

    @field_validator("ttl", "api_timeout", "retry_delay")
    @classmethod
    def validate_duration(cls, v: timedelta, info) -> timedelta:
        """Durations must be strictly positive."""
        return _positive(info.field_name, v)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Only http(s) endpoints are supported."""
        if not v.startswith(("https://", "http://")):
            raise ValueError(f"Unsupported API endpoint: {v}")
        return v.rstrip("/")

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Create CacheConfig from KEYBASE_* environment variables.

        Unset variables fall back to the documented defaults.
        """
        values: dict = {}
        env = os.environ
        if "KEYBASE_CACHE_PATH" in env:
            values["cache_path"] = env["KEYBASE_CACHE_PATH"]
        if "KEYBASE_CACHE_TTL" in env:
            values["ttl"] = float(env["KEYBASE_CACHE_TTL"])
        if "KEYBASE_API_TIMEOUT" in env:
            values["api_timeout"] = float(env["KEYBASE_API_TIMEOUT"])
        if "KEYBASE_MAX_RETRIES" in env:
            values["max_retries"] = int(env["KEYBASE_MAX_RETRIES"])
        if "KEYBASE_RETRY_DELAY" in env:
            values["retry_delay"] = float(env["KEYBASE_RETRY_DELAY"])
        if "KEYBASE_API_URL" in env:
            values["base_url"] = env["KEYBASE_API_URL"]
        if "KEYBASE_OFFLINE" in env:
            values["offline_mode"] = env["KEYBASE_OFFLINE"].lower() in _TRUE_VALUES
        return cls(**values)


class KeeperConfig(BaseModel):
    """Validated Keeper configuration."""

    streaming_threshold: int = Field(default=DEFAULT_STREAMING_THRESHOLD, ge=0)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1, le=MAX_CHUNK_SIZE)
    cipher_backend: str = Field(default="aesgcm")
    armor: bool = True
    recipients: list[str] = Field(default_factory=list)
    cache_ttl: Optional[timedelta] = None

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @field_validator("recipients")
    @classmethod
    def validate_recipients(cls, v: list[str]) -> list[str]:
        """Every recipient must be a valid Keybase username."""
        return [validate_username(name) for name in v]

    @field_validator("cache_ttl")
    @classmethod
    def validate_cache_ttl(cls, v: Optional[timedelta]) -> Optional[timedelta]:
        if v is not None:
            _positive("cache_ttl", v)
        return v

    @classmethod
    def from_env(cls) -> "KeeperConfig":
        """Create KeeperConfig from KEYBASE_* environment variables."""
        values: dict = {}
        env = os.environ
        if "KEYBASE_STREAMING_THRESHOLD" in env:
            values["streaming_threshold"] = int(env["KEYBASE_STREAMING_THRESHOLD"])
        if "KEYBASE_CIPHER_BACKEND" in env:
            values["cipher_backend"] = env["KEYBASE_CIPHER_BACKEND"]
        if "KEYBASE_ARMOR" in env:
            values["armor"] = parse_bool("KEYBASE_ARMOR", env["KEYBASE_ARMOR"])
        if "KEYBASE_RECIPIENTS" in env:
            values["recipients"] = [
                r.strip() for r in env["KEYBASE_RECIPIENTS"].split(",") if r.strip()
            ]
        return cls(**values)

    @classmethod
    def from_url(cls, url: str) -> "KeeperConfig":
        """Parse a ``keybase://user1,user2?cache_ttl=SECONDS`` URL.

        Supported query parameters are ``cache_ttl`` (positive seconds),
        ``armor`` (boolean) and ``cipher`` ("aesgcm" or "chacha20"). Any
        other parameter is rejected.

        Args:
            url: Keybase URL naming the recipients.

        Returns:
            KeeperConfig with ``recipients`` and any given parameters.

        Raises:
            ValueError: On a wrong scheme, no recipients, a bad username,
                an unknown parameter or a bad parameter value.
        """
        if not url:
            raise ValueError("URL cannot be empty")
        parts = urlsplit(url)
        if parts.scheme != "keybase":
            raise ValueError(
                f"invalid URL scheme: expected 'keybase', got {parts.scheme!r}"
            )
        raw = parts.netloc or parts.path.lstrip("/")
        recipients = [r.strip() for r in raw.split(",") if r.strip()]
        if not recipients:
            raise ValueError("no recipients specified in URL")

        values: dict = {"recipients": recipients}
        query = parse_qs(parts.query, keep_blank_values=True)
        unknown = sorted(set(query) - set(_URL_PARAMETERS))
        if unknown:
            raise ValueError(
                f"unsupported URL parameter(s): {', '.join(unknown)} "
                f"(expected one of: {', '.join(_URL_PARAMETERS)})"
            )
        repeated = sorted(key for key, given in query.items() if len(given) > 1)
        if repeated:
            raise ValueError(f"URL parameter(s) given more than once: {', '.join(repeated)}")
        raw_ttl = query.get("cache_ttl", [""])[0]
        if raw_ttl:
            try:
                seconds = int(raw_ttl)
            except ValueError as err:
                raise ValueError(f"invalid cache_ttl parameter: {raw_ttl!r}") from err
            if seconds <= 0:
                raise ValueError(f"cache_ttl must be positive, got {seconds}")
            values["cache_ttl"] = timedelta(seconds=seconds)
        raw_armor = query.get("armor", [""])[0]
        if raw_armor:
            values["armor"] = parse_bool("armor", raw_armor)
        raw_cipher = query.get("cipher", [""])[0]
        if raw_cipher:
            values["cipher_backend"] = raw_cipher
        return cls(**values)

    def to_url(self) -> str:
        """Render the recipients and non-default URL parameters back as a URL."""
        url = f"keybase://{','.join(self.recipients)}"
        params = {}
        if self.cache_ttl is not None:
            params["cache_ttl"] = int(self.cache_ttl.total_seconds())
        if not self.armor:
            params["armor"] = "false"
        if self.cipher_backend != "aesgcm":
            params["cipher"] = self.cipher_backend
        if params:
            url += f"?{urlencode(params)}"
        return url
