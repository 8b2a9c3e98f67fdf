"""
Envelope Codec — multi-recipient authenticated encryption.

A random payload key encrypts the message; each recipient gets a slot
holding that payload key wrapped under X25519(ephemeral, recipient) → HKDF.

Framing (all integers big-endian):
    prefix:  magic "KBKP" | version u8 | mode u8 | header_len u32
    header:  cipher u8 | ephemeral public key 32B | nonce prefix 8B
             | chunk_size u32 | recipient count u16
             | count × [recipient public key 32B | wrapped payload key 48B]
    digest:  SHA-256(prefix | header)
    body:    mode 1 (one-shot): sealed plaintext
             mode 2 (stream):   records of [final u8 | length u32 | sealed chunk]

Chunk ``i`` uses nonce ``prefix | i`` and AAD ``digest | i | final``, so
chunks cannot be reordered, truncated or moved to another header.
Decoders dispatch on the mode byte; the producer picks the mode.
Either framing may be wrapped in ASCII armor (see ``armor``); decoders
recognise the armor header line before looking for the magic.

Security Note:
    Never log plaintext, ciphertext or key bytes. Every framing or
    authentication failure raises the same InvalidArgument message.
"""
import os
import hmac
import struct
import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import BinaryIO, Optional
from collections.abc import Sequence
from io import BytesIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import InvalidArgument, NotFound
from ..utils import check_cancelled
from .armor import MALFORMED, ARMOR_BEGIN, ArmorReader, ArmorWriter, armor, dearmor, is_armored
from .keys import KEY_SIZE, Keyring, validate_public_key

logger = logging.getLogger("keybase.crypto")

MAGIC = b"KBKP"
VERSION = 1
MODE_ONESHOT = 1
MODE_STREAM = 2

NONCE_PREFIX_SIZE = 8
TAG_SIZE = 16
DIGEST_SIZE = 32
SLOT_SIZE = KEY_SIZE + KEY_SIZE + TAG_SIZE
MAX_RECIPIENTS = 0xFFFF
MAX_CHUNK_SIZE = 16 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 1024 * 1024

_PREFIX = struct.Struct("!4sBBI")
_HEADER = struct.Struct("!B32s8sIH")
_RECORD = struct.Struct("!BI")
_COUNTER = struct.Struct("!I")
_MAX_HEADER_LEN = _HEADER.size + MAX_RECIPIENTS * SLOT_SIZE

_SLOT_NONCE = bytes(12)
_SLOT_CONTEXT = b"keybase-keeper-slot-v1"

CIPHERS = {1: AESGCM, 2: ChaCha20Poly1305}
CIPHER_IDS = {"aesgcm": 1, "chacha20": 2}

_TAMPERED = MALFORMED


@dataclass(frozen=True)
class EnvelopeHeader:
    """Parsed, digest-verified envelope header."""

    mode: int
    cipher: int
    ephemeral_key: bytes
    nonce_prefix: bytes
    chunk_size: int
    slots: tuple
    digest: bytes

    @property
    def recipients(self) -> list[bytes]:
        return [recipient for recipient, _ in self.slots]

    @property
    def streaming(self) -> bool:
        return self.mode == MODE_STREAM


@dataclass(frozen=True)
class MessageInfo:
    """What a successful decryption learned about the message."""

    receiver_key: bytes
    recipients: list
    streaming: bool


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: bytes) -> bytes:
    """Derive a 32-byte key from shared-secret material using HKDF-SHA256."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=context,
    )
    return hkdf.derive(seed)


def _slot_key(shared: bytes, ephemeral_key: bytes, recipient: bytes) -> bytes:
    return derive_key(shared, _SLOT_CONTEXT + ephemeral_key + recipient)


def _nonce(prefix: bytes, index: int) -> bytes:
    return prefix + _COUNTER.pack(index)


def _aad(digest: bytes, index: int, final: bool) -> bytes:
    return digest + _COUNTER.pack(index) + (b"\x01" if final else b"\x00")


def cipher_id(backend: str) -> int:
    """Map a cipher backend name ("aesgcm", "chacha20") to its header id."""
    try:
        return CIPHER_IDS[backend.lower()]
    except KeyError:
        raise InvalidArgument(f"Unsupported cipher backend: {backend}") from None


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

class _Sealer:
    """Builds the framing and seals chunks for one message."""

    def __init__(
        self,
        recipients: Sequence[bytes],
        mode: int,
        chunk_size: int,
        cipher_backend: str,
    ):
        keys: list[bytes] = []
        for recipient in recipients:
            key = validate_public_key(recipient)
            if key not in keys:
                keys.append(key)
        if not keys:
            raise InvalidArgument("at least one recipient is required")
        if len(keys) > MAX_RECIPIENTS:
            raise InvalidArgument(
                f"too many recipients: {len(keys)} (maximum {MAX_RECIPIENTS})"
            )
        if not 1 <= chunk_size <= MAX_CHUNK_SIZE:
            raise InvalidArgument(
                f"chunk_size must be in [1 .. {MAX_CHUNK_SIZE}], got {chunk_size}"
            )
        cid = cipher_id(cipher_backend)
        payload_key = os.urandom(KEY_SIZE)
        ephemeral = x25519.X25519PrivateKey.generate()
        ephemeral_key = ephemeral.public_key().public_bytes_raw()
        nonce_prefix = os.urandom(NONCE_PREFIX_SIZE)

        header = [_HEADER.pack(cid, ephemeral_key, nonce_prefix, chunk_size, len(keys))]
        for recipient in keys:
            try:
                shared = ephemeral.exchange(
                    x25519.X25519PublicKey.from_public_bytes(recipient)
                )
            except ValueError as err:
                raise InvalidArgument(f"invalid recipient public key: {err}") from err
            wrap = ChaCha20Poly1305(_slot_key(shared, ephemeral_key, recipient))
            header.append(recipient + wrap.encrypt(_SLOT_NONCE, payload_key, None))
        header_bytes = b"".join(header)
        prefix = _PREFIX.pack(MAGIC, VERSION, mode, len(header_bytes))
        self.digest = hashlib.sha256(prefix + header_bytes).digest()
        self.framing = prefix + header_bytes + self.digest
        self.nonce_prefix = nonce_prefix
        self.chunk_size = chunk_size
        self.recipients = len(keys)
        self._aead = CIPHERS[cid](payload_key)

    def seal_chunk(self, index: int, chunk: bytes, final: bool) -> bytes:
        return self._aead.encrypt(
            _nonce(self.nonce_prefix, index), chunk, _aad(self.digest, index, final),
        )


def seal(
    plaintext: bytes,
    recipients: Sequence[bytes],
    cipher_backend: str = "aesgcm",
    armored: bool = False,
) -> bytes:
    """Encrypt ``plaintext`` in memory for every recipient public key.

    Args:
        plaintext: Data to encrypt (may be empty).
        recipients: Raw 32-byte X25519 public keys.
        cipher_backend: Payload AEAD, "aesgcm" or "chacha20".
        armored: Wrap the result in ASCII armor.

    Returns:
        One-shot framed ciphertext.

    Raises:
        InvalidArgument: If there are no recipients or a key is invalid.
    """
    sealer = _Sealer(recipients, MODE_ONESHOT, DEFAULT_CHUNK_SIZE, cipher_backend)
    body = sealer.seal_chunk(0, bytes(plaintext), True)
    logger.debug("Sealed one-shot message for %d recipient(s)", sealer.recipients)
    if armored:
        return armor(sealer.framing + body)
    return sealer.framing + body


def _read_up_to(source: BinaryIO, size: int) -> bytes:
    """Read ``size`` bytes unless EOF comes first (handles short reads)."""
    parts = []
    remaining = size
    while remaining > 0:
        data = source.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


def seal_stream(
    source: BinaryIO,
    sink: BinaryIO,
    recipients: Sequence[bytes],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    cipher_backend: str = "aesgcm",
    cancel: Optional[threading.Event] = None,
    armored: bool = False,
) -> int:
    """Encrypt ``source`` into ``sink`` chunk by chunk.

    Memory use is bounded by ``chunk_size`` regardless of the input length.
    Cancellation is checked before every chunk. With ``armored`` the output
    is written as ASCII armor lines.

    Returns:
        Number of plaintext bytes consumed.

    Raises:
        InvalidArgument: If there are no recipients or a key is invalid.
        DeadlineExceeded: If ``cancel`` is set before the stream finishes.
    """
    sealer = _Sealer(recipients, MODE_STREAM, chunk_size, cipher_backend)
    writer = ArmorWriter(sink) if armored else None
    if writer is not None:
        sink = writer
    sink.write(sealer.framing)
    total = 0
    index = 0
    current = _read_up_to(source, chunk_size)
    while True:
        check_cancelled(cancel, "seal_stream")
        following = _read_up_to(source, chunk_size) if len(current) == chunk_size else b""
        final = not following
        sealed = sealer.seal_chunk(index, current, final)
        sink.write(_RECORD.pack(1 if final else 0, len(sealed)))
        sink.write(sealed)
        total += len(current)
        if final:
            break
        current = following
        index += 1
    if writer is not None:
        writer.finish()
    logger.debug(
        "Sealed stream of %d chunk(s) for %d recipient(s)", index + 1, sealer.recipients,
    )
    return total


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _read_exact(source: BinaryIO, size: int) -> bytes:
    data = _read_up_to(source, size)
    if len(data) != size:
        raise InvalidArgument(_TAMPERED)
    return data


def read_header(source: BinaryIO) -> EnvelopeHeader:
    """Read and verify the framing at the start of ``source``.

    The header digest is checked before anything in the header is used,
    so any corruption surfaces as InvalidArgument rather than a key miss.

    Raises:
        InvalidArgument: If the framing is malformed or the digest differs.
    """
    prefix = _read_exact(source, _PREFIX.size)
    magic, version, mode, header_len = _PREFIX.unpack(prefix)
    if (
        magic != MAGIC
        or version != VERSION
        or mode not in (MODE_ONESHOT, MODE_STREAM)
        or not _HEADER.size + SLOT_SIZE <= header_len <= _MAX_HEADER_LEN
        or (header_len - _HEADER.size) % SLOT_SIZE
    ):
        raise InvalidArgument(_TAMPERED)
    header = _read_exact(source, header_len)
    digest = _read_exact(source, DIGEST_SIZE)
    if not hmac.compare_digest(hashlib.sha256(prefix + header).digest(), digest):
        raise InvalidArgument(_TAMPERED)

    cid, ephemeral_key, nonce_prefix, chunk_size, count = _HEADER.unpack_from(header)
    if (
        cid not in CIPHERS
        or count != (header_len - _HEADER.size) // SLOT_SIZE
        or not 1 <= chunk_size <= MAX_CHUNK_SIZE
    ):
        raise InvalidArgument(_TAMPERED)
    slots = []
    offset = _HEADER.size
    for _ in range(count):
        slot = header[offset:offset + SLOT_SIZE]
        slots.append((slot[:KEY_SIZE], slot[KEY_SIZE:]))
        offset += SLOT_SIZE
    return EnvelopeHeader(
        mode=mode,
        cipher=cid,
        ephemeral_key=ephemeral_key,
        nonce_prefix=nonce_prefix,
        chunk_size=chunk_size,
        slots=tuple(slots),
        digest=digest,
    )


def inspect(ciphertext: bytes) -> EnvelopeHeader:
    """Parse the framing of an in-memory ciphertext without decrypting it."""
    if is_armored(ciphertext):
        ciphertext = dearmor(ciphertext)
    return read_header(BytesIO(ciphertext))


def _unlock(header: EnvelopeHeader, keyring: Keyring):
    """Find a keyring entry for one of the slots and unwrap the payload key.

    Raises:
        NotFound: If no keyring entry matches any recipient slot.
        InvalidArgument: If the matching slot fails to unwrap.
    """
    for recipient, wrapped in header.slots:
        pair = keyring.lookup(recipient)
        if pair is None:
            continue
        try:
            sk = x25519.X25519PrivateKey.from_private_bytes(pair.secret_key)
            shared = sk.exchange(
                x25519.X25519PublicKey.from_public_bytes(header.ephemeral_key)
            )
            wrap = ChaCha20Poly1305(_slot_key(shared, header.ephemeral_key, recipient))
            payload_key = wrap.decrypt(_SLOT_NONCE, wrapped, None)
        except (InvalidTag, ValueError) as err:
            raise InvalidArgument(_TAMPERED) from err
        return CIPHERS[header.cipher](payload_key), pair
    raise NotFound("no matching decryption key found in keyring")


def _open_chunk(aead, header: EnvelopeHeader, index: int, sealed: bytes, final: bool) -> bytes:
    try:
        return aead.decrypt(
            _nonce(header.nonce_prefix, index), sealed, _aad(header.digest, index, final),
        )
    except InvalidTag as err:
        raise InvalidArgument(_TAMPERED) from err


def _open_body(
    source: BinaryIO,
    sink: BinaryIO,
    header: EnvelopeHeader,
    aead,
    cancel: Optional[threading.Event],
) -> None:
    if header.mode == MODE_ONESHOT:
        check_cancelled(cancel, "open")
        sealed = source.read()
        if len(sealed) < TAG_SIZE:
            raise InvalidArgument(_TAMPERED)
        sink.write(_open_chunk(aead, header, 0, sealed, True))
        return

    index = 0
    max_sealed = header.chunk_size + TAG_SIZE
    while True:
        check_cancelled(cancel, "open_stream")
        record = _read_exact(source, _RECORD.size)
        flag, length = _RECORD.unpack(record)
        if flag not in (0, 1) or not TAG_SIZE <= length <= max_sealed:
            raise InvalidArgument(_TAMPERED)
        final = flag == 1
        sink.write(_open_chunk(aead, header, index, _read_exact(source, length), final))
        if final:
            if source.read(1):
                raise InvalidArgument(_TAMPERED)
            return
        index += 1


def open_with_info(
    ciphertext: bytes,
    keyring: Keyring,
    cancel: Optional[threading.Event] = None,
) -> tuple[bytes, MessageInfo]:
    """Decrypt an in-memory ciphertext of either framing.

    Returns:
        Tuple of (plaintext, MessageInfo).

    Raises:
        InvalidArgument: Malformed framing or failed authentication.
        NotFound: No keyring entry matches any recipient slot.
        DeadlineExceeded: If ``cancel`` is set between chunks.
    """
    if is_armored(ciphertext):
        ciphertext = dearmor(ciphertext)
    source = BytesIO(ciphertext)
    sink = BytesIO()
    header = read_header(source)
    aead, pair = _unlock(header, keyring)
    _open_body(source, sink, header, aead, cancel)
    return sink.getvalue(), MessageInfo(
        receiver_key=pair.public_key,
        recipients=header.recipients,
        streaming=header.streaming,
    )


def open(ciphertext: bytes, keyring: Keyring) -> bytes:
    """Decrypt an in-memory ciphertext; see ``open_with_info``."""
    plaintext, _ = open_with_info(ciphertext, keyring)
    return plaintext


class _Replay:
    """Source that yields already-consumed ``head`` bytes before the rest."""

    def __init__(self, head: bytes, source: BinaryIO):
        self._head = head
        self._source = source

    def read(self, size: int = -1) -> bytes:
        if not self._head:
            return self._source.read(size)
        if size < 0:
            data, self._head = self._head + self._source.read(), b""
            return data
        data, self._head = self._head[:size], self._head[size:]
        return data


def _detect(source: BinaryIO):
    """Sniff the start of ``source`` and strip armor when present."""
    head = _read_up_to(source, len(ARMOR_BEGIN))
    if head == ARMOR_BEGIN:
        return ArmorReader(source, head)
    return _Replay(head, source)


def open_stream(
    source: BinaryIO,
    sink: BinaryIO,
    keyring: Keyring,
    cancel: Optional[threading.Event] = None,
) -> MessageInfo:
    """Decrypt ``source`` into ``sink`` one chunk at a time.

    Chunks are authenticated individually, so on failure ``sink`` may hold
    a verified prefix of the plaintext; callers must discard it.

    Raises:
        InvalidArgument: Malformed framing or failed authentication.
        NotFound: No keyring entry matches any recipient slot.
        DeadlineExceeded: If ``cancel`` is set between chunks.
    """
    source = _detect(source)
    header = read_header(source)
    aead, pair = _unlock(header, keyring)
    _open_body(source, sink, header, aead, cancel)
    return MessageInfo(
        receiver_key=pair.public_key,
        recipients=header.recipients,
        streaming=header.streaming,
    )
