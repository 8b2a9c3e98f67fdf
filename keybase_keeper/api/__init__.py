"""Keybase API — username to public key resolution."""

from .client import KeybaseClient, ResolvedKey, APIError

__all__ = ["KeybaseClient", "ResolvedKey", "APIError"]
