"""Envelope codec and X25519 key handling."""

from .keys import KeyPair, Keyring, kid_from_public_key, public_key_from_kid

__all__ = ["KeyPair", "Keyring", "kid_from_public_key", "public_key_from_kid"]
