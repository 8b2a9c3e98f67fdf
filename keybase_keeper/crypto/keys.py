"""
Keys — X25519 key pairs, Keybase KID helpers and the decryption keyring.

A Keybase NaCl DH key identifier (KID) is the hex encoding of
``0x01 0x21 || 32-byte public key || 0x0a``.

Security Note:
    Never log secret key bytes. Only log KIDs.
"""
import logging
from dataclasses import dataclass
from collections.abc import Iterable, Iterator

from cryptography.hazmat.primitives.asymmetric import x25519

from ..exceptions import InvalidArgument

logger = logging.getLogger("keybase.crypto")

KEY_SIZE = 32
_KID_PREFIX = bytes([0x01, 0x21])
_KID_SUFFIX = bytes([0x0A])


def validate_public_key(public_key: bytes) -> bytes:
    """Ensure ``public_key`` is a raw 32-byte X25519 public key.

    Raises:
        InvalidArgument: If the key has the wrong length or type.
    """
    if not isinstance(public_key, (bytes, bytearray)):
        raise InvalidArgument(
            f"public key must be bytes, got {type(public_key).__name__}"
        )
    if len(public_key) != KEY_SIZE:
        raise InvalidArgument(
            f"public key must be {KEY_SIZE} bytes, got {len(public_key)}"
        )
    return bytes(public_key)


def kid_from_public_key(public_key: bytes) -> str:
    """Return the Keybase KID (hex) for a raw X25519 public key."""
    return (_KID_PREFIX + validate_public_key(public_key) + _KID_SUFFIX).hex()


def public_key_from_kid(kid: str) -> bytes:
    """Extract the raw public key from a Keybase NaCl DH KID.

    Raises:
        InvalidArgument: If ``kid`` is not hex or not an encryption KID.
    """
    try:
        raw = bytes.fromhex(kid)
    except (TypeError, ValueError) as err:
        raise InvalidArgument(f"key ID {kid!r} is not valid hex") from err
    if (
        len(raw) != len(_KID_PREFIX) + KEY_SIZE + len(_KID_SUFFIX)
        or not raw.startswith(_KID_PREFIX)
        or not raw.endswith(_KID_SUFFIX)
    ):
        raise InvalidArgument(f"key ID {kid!r} is not a NaCl encryption key")
    return raw[len(_KID_PREFIX):-len(_KID_SUFFIX)]


@dataclass(frozen=True)
class KeyPair:
    """An X25519 key pair in raw byte form."""

    secret_key: bytes
    public_key: bytes

    @classmethod
    def generate(cls) -> "KeyPair":
        sk = x25519.X25519PrivateKey.generate()
        return cls(
            secret_key=sk.private_bytes_raw(),
            public_key=sk.public_key().public_bytes_raw(),
        )

    @classmethod
    def from_secret_key(cls, secret_key: bytes) -> "KeyPair":
        """Rebuild a pair from its 32 secret bytes."""
        if len(secret_key) != KEY_SIZE:
            raise InvalidArgument(
                f"secret key must be {KEY_SIZE} bytes, got {len(secret_key)}"
            )
        sk = x25519.X25519PrivateKey.from_private_bytes(secret_key)
        return cls(
            secret_key=bytes(secret_key),
            public_key=sk.public_key().public_bytes_raw(),
        )

    @property
    def kid(self) -> str:
        return kid_from_public_key(self.public_key)

    def __repr__(self) -> str:
        return f"<KeyPair kid={self.kid}>"


class Keyring:
    """Collection of secret keys available for trial decryption.

    Keys are indexed by their public key, so the codec can match a
    recipient slot to a secret key without trying every key.
    """

    def __init__(self, keys: Iterable = ()):
        self._keys: dict[bytes, KeyPair] = {}
        for key in keys:
            self.add(key)

    def add(self, key) -> KeyPair:
        """Add a KeyPair or raw 32-byte secret key; returns the stored pair."""
        pair = key if isinstance(key, KeyPair) else KeyPair.from_secret_key(key)
        self._keys[pair.public_key] = pair
        logger.debug("Keyring: added key kid=%s", pair.kid)
        return pair

    def remove(self, public_key: bytes) -> None:
        self._keys.pop(public_key, None)

    def lookup(self, public_key: bytes):
        """Return the KeyPair owning ``public_key``, or None."""
        return self._keys.get(public_key)

    def public_keys(self) -> list[bytes]:
        return list(self._keys)

    def __contains__(self, public_key: object) -> bool:
        return public_key in self._keys

    def __iter__(self) -> Iterator[KeyPair]:
        return iter(list(self._keys.values()))

    def __len__(self) -> int:
        return len(self._keys)

    def __repr__(self) -> str:
        return f"<Keyring keys={len(self._keys)}>"
