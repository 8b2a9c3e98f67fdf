"""
ASCII Armor — text-safe wrapping of envelope ciphertext.

Armored messages are plain ASCII so they can be stored in text files and
state documents:

    BEGIN KEYBASE KEEPER MESSAGE.
    <base64, 64 characters per line>
    END KEYBASE KEEPER MESSAGE.

Each body line encodes 48 bytes on its own, so armor can be produced and
removed one line at a time. Only canonical base64 is accepted, so every
change to the text changes the decoded bytes or is rejected outright.
"""
import base64
import binascii
from io import BytesIO
from typing import BinaryIO

from ..exceptions import InvalidArgument

ARMOR_BEGIN = b"BEGIN KEYBASE KEEPER MESSAGE."
ARMOR_END = b"END KEYBASE KEEPER MESSAGE."
LINE_BYTES = 48

MALFORMED = "ciphertext is malformed or failed authentication"


def is_armored(data: bytes) -> bool:
    """True if ``data`` starts with the armor header line."""
    return bytes(data[:len(ARMOR_BEGIN)]) == ARMOR_BEGIN


def _encode_line(data: bytes) -> bytes:
    return base64.b64encode(data) + b"\n"


def _decode_line(line: bytes) -> bytes:
    if not line:
        raise InvalidArgument(MALFORMED)
    try:
        data = base64.b64decode(line, validate=True)
    except (binascii.Error, ValueError) as err:
        raise InvalidArgument(MALFORMED) from err
    if base64.b64encode(data) != line:
        raise InvalidArgument(MALFORMED)
    return data


def armor(data: bytes) -> bytes:
    """Wrap ``data`` in armor lines."""
    lines = [ARMOR_BEGIN + b"\n"]
    for offset in range(0, len(data), LINE_BYTES):
        lines.append(_encode_line(data[offset:offset + LINE_BYTES]))
    lines.append(ARMOR_END + b"\n")
    return b"".join(lines)


def dearmor(text: bytes) -> bytes:
    """Strip the armor from an in-memory message.

    Raises:
        InvalidArgument: If the armor or its base64 body is malformed.
    """
    reader = ArmorReader(BytesIO(bytes(text)))
    return reader.read()


class ArmorWriter:
    """Sink wrapper that armors everything written through it.

    Call ``finish()`` once after the last write to emit the footer.
    """

    def __init__(self, sink: BinaryIO):
        self._sink = sink
        self._pending = b""
        sink.write(ARMOR_BEGIN + b"\n")

    def write(self, data: bytes) -> int:
        buffer = self._pending + bytes(data)
        complete = len(buffer) - len(buffer) % LINE_BYTES
        for offset in range(0, complete, LINE_BYTES):
            self._sink.write(_encode_line(buffer[offset:offset + LINE_BYTES]))
        self._pending = buffer[complete:]
        return len(data)

    def finish(self) -> None:
        if self._pending:
            self._sink.write(_encode_line(self._pending))
            self._pending = b""
        self._sink.write(ARMOR_END + b"\n")


class ArmorReader:
    """Source wrapper that removes armor line by line as it is read.

    ``head`` holds bytes already consumed from ``source`` while sniffing
    for the header line.
    """

    def __init__(self, source: BinaryIO, head: bytes = b""):
        self._source = source
        self._buffer = b""
        self._done = False
        if self._line(head) != ARMOR_BEGIN:
            raise InvalidArgument(MALFORMED)

    def _line(self, head: bytes = b"") -> bytes:
        line = head + self._source.readline()
        if line.endswith(b"\n"):
            line = line[:-1]
            if line.endswith(b"\r"):
                line = line[:-1]
        elif line != ARMOR_END:
            # only the footer may omit its newline
            raise InvalidArgument(MALFORMED)
        return line

    def _fill(self) -> None:
        line = self._line()
        if line == ARMOR_END:
            if self._source.read(1):
                raise InvalidArgument(MALFORMED)
            self._done = True
            return
        self._buffer += _decode_line(line)

    def read(self, size: int = -1) -> bytes:
        while not self._done and (size < 0 or len(self._buffer) < size):
            self._fill()
        if size < 0:
            data, self._buffer = self._buffer, b""
        else:
            data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

