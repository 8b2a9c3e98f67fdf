"""
Key Rotation — detect messages sealed to retired keys and re-encrypt them.

When a Keybase user rotates their encryption key, ciphertexts sealed to the
old key keep working only while the old secret key is still held. Rotation
decrypts such messages with the old keyring and seals them again to every
recipient's current key. The operation is idempotent: messages already
sealed to the current keys are skipped.

Security Note:
    Plaintext exists in memory only while a single message is re-encrypted.
    Never log plaintext or ciphertext values.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional
from collections.abc import Iterable

from .cache.store import CachedKeyRecord
from .crypto.envelope import MessageInfo
from .crypto.keys import Keyring, kid_from_public_key
from .exceptions import KeeperError, InvalidArgument, DeadlineExceeded

logger = logging.getLogger("keybase.keeper")


@dataclass
class KeyRotationInfo:
    """Outcome of checking one ciphertext against the current keys."""

    needs_rotation: bool
    receiver_kid: str
    current_kids: dict[str, str] = field(default_factory=dict)
    missing_recipients: list[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class MigrationResult:
    """Per-message result of ``rotate_ciphertexts``."""

    index: int
    ciphertext: bytes
    rotated: bool = False
    error: Optional[str] = None


def _recipients(keeper, recipients: Optional[Iterable[str]]) -> list[str]:
    names = list(recipients) if recipients is not None else list(keeper.config.recipients)
    if not names:
        raise InvalidArgument(
            "no recipients configured for key rotation", operation="rotate",
        )
    return names


def current_keys(
    keeper,
    recipients: Optional[Iterable[str]] = None,
    refresh: bool = False,
    cancel: Optional[threading.Event] = None,
) -> dict[str, CachedKeyRecord]:
    """Return the current key record for every recipient.

    With ``refresh=True`` the cache is bypassed so that a rotation made
    since the last lookup is seen immediately.
    """
    names = _recipients(keeper, recipients)
    if refresh:
        return keeper.cache.refresh_users(names, cancel=cancel)
    return keeper.cache.get_public_keys(names, cancel=cancel)


def assess(info: MessageInfo, records: dict[str, CachedKeyRecord]) -> KeyRotationInfo:
    """Compare what a message was sealed to against ``records``."""
    current = {record.public_key for record in records.values()}
    sealed_to = set(info.recipients)
    missing = sorted(
        name for name, record in records.items() if record.public_key not in sealed_to
    )
    reasons = []
    if info.receiver_key not in current:
        reasons.append("receiver key is no longer current")
    if missing:
        reasons.append(f"not sealed to current key of {', '.join(missing)}")
    return KeyRotationInfo(
        needs_rotation=bool(reasons),
        receiver_kid=kid_from_public_key(info.receiver_key),
        current_kids={name: record.key_id for name, record in records.items()},
        missing_recipients=missing,
        reason="; ".join(reasons),
    )


def detect_rotation(
    keeper,
    ciphertext: bytes,
    keyring: Optional[Keyring] = None,
    recipients: Optional[Iterable[str]] = None,
    refresh: bool = False,
    cancel: Optional[threading.Event] = None,
) -> KeyRotationInfo:
    """Check whether ``ciphertext`` should be re-encrypted.

    Args:
        keeper: Keeper used to decrypt and to look up current keys.
        ciphertext: Message to check.
        keyring: Secret keys able to open the message.
        recipients: Usernames the message should be sealed to; defaults to
            the Keeper's configured recipients.
        refresh: Bypass the cache when fetching current keys.
        cancel: Optional event that aborts the operation.

    Raises:
        InvalidArgument: No recipients configured, or a bad ciphertext.
        NotFound: No key opens the message, or a user is unknown.
    """
    _, info = keeper.decrypt_with_info(ciphertext, keyring=keyring, cancel=cancel)
    records = current_keys(keeper, recipients, refresh=refresh, cancel=cancel)
    return assess(info, records)


def re_encrypt(
    keeper,
    plaintext: bytes,
    recipients: Optional[Iterable[str]] = None,
    cancel: Optional[threading.Event] = None,
) -> bytes:
    """Seal ``plaintext`` to the freshly fetched keys of ``recipients``."""
    records = current_keys(keeper, recipients, refresh=True, cancel=cancel)
    keys = [record.public_key for record in records.values()]
    return keeper.encrypt(plaintext, recipients=keys, cancel=cancel)


def rotate_ciphertexts(
    keeper,
    ciphertexts: Iterable[bytes],
    keyring: Optional[Keyring] = None,
    recipients: Optional[Iterable[str]] = None,
    batch_size: int = 100,
    cancel: Optional[threading.Event] = None,
) -> tuple[list[MigrationResult], dict]:
    """Re-encrypt every message that is not sealed to the current keys.

    Current keys are refreshed once, before the first batch. A message that
    fails to decrypt or re-encrypt is counted as an error and kept as is;
    cancellation aborts the whole run.

    Args:
        keeper: Keeper used for decryption and encryption.
        ciphertexts: Messages to migrate.
        keyring: Secret keys (old and new) able to open the messages.
        recipients: Usernames to seal to; defaults to configured recipients.
        batch_size: Number of messages processed per logged batch.
        cancel: Optional event that aborts the run.

    Returns:
        Tuple of (per-message results, stats dict with keys: total,
        rotated, errors, skipped).

    Raises:
        InvalidArgument: If ``batch_size`` is not positive.
        DeadlineExceeded: On cancellation.
    """
    if batch_size <= 0:
        raise InvalidArgument(
            f"batch_size must be positive, got {batch_size}", operation="rotate",
        )
    items = list(ciphertexts)
    records = current_keys(keeper, recipients, refresh=True, cancel=cancel)
    new_keys = [record.public_key for record in records.values()]
    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}
    results: list[MigrationResult] = []

    logger.info(
        "Starting key rotation of %d message(s) for %s (batch_size=%d)",
        len(items), ",".join(sorted(records)), batch_size,
    )

    for offset in range(0, len(items), batch_size):
        batch = items[offset:offset + batch_size]
        logger.info(
            "Processing batch %d (%d messages)", offset // batch_size + 1, len(batch),
        )
        for index, ciphertext in enumerate(batch, start=offset):
            stats["total"] += 1
            result = MigrationResult(index=index, ciphertext=ciphertext)
            try:
                plaintext, info = keeper.decrypt_with_info(
                    ciphertext, keyring=keyring, cancel=cancel,
                )
                check = assess(info, records)
                if not check.needs_rotation:
                    stats["skipped"] += 1
                else:
                    result.ciphertext = keeper.encrypt(
                        plaintext, recipients=new_keys, cancel=cancel,
                    )
                    result.rotated = True
                    stats["rotated"] += 1
            except DeadlineExceeded:
                raise
            except KeeperError as err:
                logger.error("Error rotating message index=%d: %s", index, err)
                result.error = str(err)
                stats["errors"] += 1
            results.append(result)

    logger.info("Key rotation complete: %s", stats)
    return results, stats
