"""
Keeper — encrypt and decrypt secrets for Keybase users.

Provides the public API:
- ``encrypt(plaintext, recipients)`` — seal for usernames and/or raw keys
- ``decrypt(ciphertext, keyring)`` — open with any matching secret key
- ``decrypt_with_info(...)`` — also report which receiver key matched
- ``Keeper.from_url("keybase://alice,bob")`` — build from a recipient URL

Payloads larger than ``streaming_threshold`` go through the chunked codec;
everything else (including a payload of exactly the threshold size) is
handled in memory. Both decoders accept both framings, armored or binary.
Output is ASCII-armored unless ``KeeperConfig.armor`` is off.

Security Note:
    Never log plaintext, ciphertext or secret keys. Only log sizes,
    usernames and key IDs.
"""
import logging
import threading
from io import BytesIO
from typing import Optional, Union
from collections.abc import Iterable

from .cache.manager import CacheManager
from .config import CacheConfig, KeeperConfig
from .crypto import envelope
from .crypto.envelope import MessageInfo
from .crypto.keys import Keyring, validate_public_key
from .exceptions import InvalidArgument, InternalError
from .utils import check_cancelled

logger = logging.getLogger("keybase.keeper")

Recipient = Union[str, bytes]


class Keeper:
    """Multi-recipient encryption bound to a public key cache.

    Username recipients are resolved through the ``CacheManager``; when none
    is supplied the Keeper creates one on first use and owns it.
    """

    def __init__(
        self,
        config: Optional[KeeperConfig] = None,
        cache_manager: Optional[CacheManager] = None,
        keyring: Optional[Keyring] = None,
        cache_config: Optional[CacheConfig] = None,
    ):
        self._config = config or KeeperConfig()
        self._cache = cache_manager
        self._owns_cache = False
        self._cache_config = cache_config
        self._keyring = keyring if keyring is not None else Keyring()
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_url(
        cls,
        url: str,
        cache_manager: Optional[CacheManager] = None,
        keyring: Optional[Keyring] = None,
        cache_config: Optional[CacheConfig] = None,
    ) -> "Keeper":
        """Create a Keeper from ``keybase://user1,user2?cache_ttl=SECONDS``.

        Raises:
            InvalidArgument: If the URL cannot be parsed.
        """
        try:
            config = KeeperConfig.from_url(url)
        except ValueError as err:
            raise InvalidArgument(str(err), operation="from_url") from err
        return cls(
            config=config,
            cache_manager=cache_manager,
            keyring=keyring,
            cache_config=cache_config,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> KeeperConfig:
        return self._config

    @property
    def keyring(self) -> Keyring:
        return self._keyring

    @property
    def cache(self) -> CacheManager:
        """The Cache Manager, created on first use if none was supplied."""
        with self._lock:
            if self._cache is None:
                cache_config = self._cache_config or CacheConfig.from_env()
                if self._config.cache_ttl is not None:
                    cache_config = cache_config.model_copy(
                        update={"ttl": self._config.cache_ttl},
                    )
                self._cache = CacheManager(cache_config)
                self._owns_cache = True
            return self._cache

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise InternalError("keeper is closed", operation=operation)

    def _recipient_keys(
        self,
        recipients: Optional[Iterable[Recipient]],
        cancel: Optional[threading.Event],
    ) -> list[bytes]:
        """Turn usernames and raw keys into a de-duplicated list of public keys."""
        if recipients is None:
            recipients = self._config.recipients
        elif isinstance(recipients, (str, bytes, bytearray)):
            recipients = [recipients]
        recipients = list(recipients)
        if not recipients:
            raise InvalidArgument(
                "at least one recipient is required", operation="encrypt",
            )

        usernames = [r for r in recipients if isinstance(r, str)]
        records = {}
        if usernames:
            records = self.cache.get_public_keys(usernames, cancel=cancel)

        keys: list[bytes] = []
        for recipient in recipients:
            if isinstance(recipient, str):
                key = records[recipient].public_key
            else:
                try:
                    key = validate_public_key(recipient)
                except InvalidArgument as err:
                    raise InvalidArgument(str(err), operation="encrypt") from err
            if key not in keys:
                keys.append(key)
        return keys

    @staticmethod
    def _as_keyring(keyring) -> Keyring:
        if isinstance(keyring, Keyring):
            return keyring
        return Keyring(keyring)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(
        self,
        plaintext: bytes,
        recipients: Optional[Iterable[Recipient]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bytes:
        """Encrypt ``plaintext`` so that any one recipient can decrypt it.

        Args:
            plaintext: Data to encrypt; empty input is allowed.
            recipients: Usernames and/or raw 32-byte public keys. Defaults
                to the configured recipients.
            cancel: Optional event that aborts the operation.

        Returns:
            Ciphertext bytes.

        Raises:
            InvalidArgument: No recipients, a bad key, or non-bytes input.
            NotFound: A username could not be resolved.
            Unavailable: The key resolver kept failing.
            DeadlineExceeded: On timeout or cancellation.
        """
        self._ensure_open("encrypt")
        if not isinstance(plaintext, (bytes, bytearray, memoryview)):
            raise InvalidArgument(
                f"plaintext must be bytes, got {type(plaintext).__name__}",
                operation="encrypt",
            )
        keys = self._recipient_keys(recipients, cancel)
        check_cancelled(cancel, "encrypt")

        size = len(plaintext)
        streaming = size > self._config.streaming_threshold
        if streaming:
            sink = BytesIO()
            envelope.seal_stream(
                BytesIO(plaintext),
                sink,
                keys,
                chunk_size=self._config.chunk_size,
                cipher_backend=self._config.cipher_backend,
                cancel=cancel,
                armored=self._config.armor,
            )
            ciphertext = sink.getvalue()
        else:
            ciphertext = envelope.seal(
                bytes(plaintext),
                keys,
                cipher_backend=self._config.cipher_backend,
                armored=self._config.armor,
            )
            check_cancelled(cancel, "encrypt")

        logger.debug(
            "Encrypted %d bytes for %d recipient(s) (streaming=%s)",
            size, len(keys), streaming,
        )
        return ciphertext

    def decrypt_with_info(
        self,
        ciphertext: bytes,
        keyring: Optional[Keyring] = None,
        cancel: Optional[threading.Event] = None,
    ) -> tuple[bytes, MessageInfo]:
        """Decrypt ``ciphertext`` and report which receiver key opened it.

        Args:
            ciphertext: Output of ``encrypt`` (either framing).
            keyring: Secret keys to try; defaults to the Keeper's keyring.
            cancel: Optional event that aborts the operation.

        Returns:
            Tuple of (plaintext, MessageInfo).

        Raises:
            InvalidArgument: Empty, malformed or tampered ciphertext.
            NotFound: No key in the keyring matches any recipient.
            DeadlineExceeded: On cancellation.
        """
        self._ensure_open("decrypt")
        if not ciphertext:
            raise InvalidArgument("ciphertext is empty", operation="decrypt")
        ring = self._keyring if keyring is None else self._as_keyring(keyring)
        check_cancelled(cancel, "decrypt")

        streaming = len(ciphertext) > self._config.streaming_threshold
        if streaming:
            sink = BytesIO()
            info = envelope.open_stream(BytesIO(ciphertext), sink, ring, cancel=cancel)
            plaintext = sink.getvalue()
        else:
            plaintext, info = envelope.open_with_info(bytes(ciphertext), ring, cancel=cancel)
        check_cancelled(cancel, "decrypt")

        logger.debug(
            "Decrypted %d bytes (streaming=%s)", len(plaintext), streaming,
        )
        return plaintext, info

    def decrypt(
        self,
        ciphertext: bytes,
        keyring: Optional[Keyring] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bytes:
        """Decrypt ``ciphertext``; see ``decrypt_with_info``."""
        plaintext, _ = self.decrypt_with_info(ciphertext, keyring=keyring, cancel=cancel)
        return plaintext

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the Cache Manager if this Keeper created it."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            cache, owned = self._cache, self._owns_cache
        if owned and cache is not None:
            cache.close()
        logger.debug("Keeper closed")

    def __enter__(self) -> "Keeper":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"<Keeper recipients={self._config.recipients} "
            f"threshold={self._config.streaming_threshold}>"
        )
