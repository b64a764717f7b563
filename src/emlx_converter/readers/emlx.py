"""Helpers for reading Apple Mail ``.emlx`` message files.

A container is laid out as ``<byte count>\\n<payload><plist>``: the leading
decimal count says exactly how many bytes of RFC 822 payload follow, and
everything after the payload is a property list with mail client metadata.
"""

from __future__ import annotations

import enum
import io
import logging
import plistlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Iterable, Iterator, Mapping, NoReturn

from emlx_converter.errors import MalformedContainer

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_LENGTH_PATTERN = re.compile(rb"(\d+)\s+")
_MAX_HEADER_LENGTH = 1024

# Bit positions of the ``flags`` integer in the plist epilogue. Bits 10-22 hold
# attachment counts, priority and other values that are not flags.
APPLE_FLAG_BITS: Mapping[str, int] = {
    "read": 0,
    "deleted": 1,
    "answered": 2,
    "encrypted": 3,
    "flagged": 4,
    "recent": 5,
    "draft": 6,
    "initial": 7,
    "forwarded": 8,
    "redirected": 9,
    "signed": 23,
    "junk": 24,
    "notJunk": 25,
}


class ReaderState(enum.Enum):
    AWAITING_LENGTH = "awaiting-length"
    READING_PAYLOAD = "reading-payload"
    DRAINING_EPILOGUE = "draining-epilogue"
    DONE = "done"
    FAILED = "failed"


class EmlxReader:
    """Incremental reader for one container.

    The payload is handed out in chunks so that large messages are never held
    in memory as a whole. Once the declared number of bytes has been yielded
    the reader drains the remainder of the file and parses it as a plist.
    """

    def __init__(self, handle: BinaryIO, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._handle = handle
        self._chunk_size = chunk_size
        self._pending = b""
        self.state = ReaderState.AWAITING_LENGTH
        self.declared_length: int | None = None
        self.metadata: Mapping[str, Any] | None = None

    def read_header(self) -> int:
        """Parse the leading byte count and return it."""

        if self.state is not ReaderState.AWAITING_LENGTH:
            raise RuntimeError(f"Header already consumed (state: {self.state.value})")
        line = self._handle.readline(_MAX_HEADER_LENGTH)
        match = _LENGTH_PATTERN.match(line)
        if match is None:
            self._fail("Invalid structure; content did not start with payload length as expected")
        self.declared_length = int(match.group(1))
        self._pending = line[match.end() :]
        self.state = ReaderState.READING_PAYLOAD
        return self.declared_length

    def peek_metadata(self) -> Mapping[str, Any] | None:
        """Parse the epilogue ahead of the payload, if the handle can seek."""

        if self.state is ReaderState.AWAITING_LENGTH:
            self.read_header()
        if self.state is not ReaderState.READING_PAYLOAD or not self._handle.seekable():
            return self.metadata

        position = self._handle.tell()
        payload_start = position - len(self._pending)
        self._handle.seek(payload_start + self.declared_length)
        remainder = self._handle.read()
        self._handle.seek(position)
        return _load_metadata(remainder)

    def iter_payload(self) -> Iterator[bytes]:
        """Yield the payload bytes, then drain and parse the epilogue."""

        if self.state is ReaderState.AWAITING_LENGTH:
            self.read_header()
        if self.state is not ReaderState.READING_PAYLOAD:
            raise RuntimeError(f"Payload already consumed (state: {self.state.value})")

        remaining = self.declared_length
        overflow = b""
        if self._pending:
            head, overflow = self._pending[:remaining], self._pending[remaining:]
            self._pending = b""
            remaining -= len(head)
            if head:
                yield head

        while remaining:
            chunk = self._handle.read(min(self._chunk_size, remaining))
            if not chunk:
                read = self.declared_length - remaining
                self._fail(
                    f"Container ended after {read} of {self.declared_length} declared payload bytes"
                )
            remaining -= len(chunk)
            yield chunk

        self.state = ReaderState.DRAINING_EPILOGUE
        self.metadata = _load_metadata(overflow + self._handle.read())
        self.state = ReaderState.DONE

    @property
    def flags(self) -> frozenset[str]:
        return decode_flags(extract_flags(self.metadata))

    def _fail(self, message: str) -> NoReturn:
        self.state = ReaderState.FAILED
        raise MalformedContainer(message)


@dataclass(frozen=True)
class EmlxRecord:
    """Container for an ``.emlx`` message payload and optional metadata."""

    payload: bytes
    metadata: Mapping[str, Any] | None

    @property
    def flags(self) -> frozenset[str]:
        return decode_flags(extract_flags(self.metadata))


def read_emlx(path: Path) -> EmlxRecord:
    """Return the message payload and trailing metadata stored in ``path``."""

    with path.open("rb") as handle:
        reader = EmlxReader(handle)
        payload = b"".join(reader.iter_payload())
    return EmlxRecord(payload=payload, metadata=reader.metadata)


def message_id(path: Path) -> str:
    """Return the id of a container, e.g. ``123456`` for ``123456.partial.emlx``."""

    return path.name.split(".", 1)[0]


def extract_payload(data: bytes) -> bytes:
    """Return exactly the declared payload range of a container held in memory."""

    reader = EmlxReader(io.BytesIO(data))
    return b"".join(reader.iter_payload())


def iter_lines(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Split a chunked byte stream into lines, dropping LF / CRLF terminators.

    A terminator at the very end does not produce a trailing empty line.
    """

    # pieces of the unfinished line; each chunk is split exactly once
    pending: list[bytes] = []
    for chunk in chunks:
        pieces = chunk.split(b"\n")
        if len(pieces) == 1:
            pending.append(chunk)
            continue
        pieces[0] = b"".join(pending + [pieces[0]])
        pending = [pieces.pop()]
        for line in pieces:
            yield line[:-1] if line.endswith(b"\r") else line
    rest = b"".join(pending)
    if rest:
        yield rest


def extract_flags(metadata: Mapping[str, object] | None) -> int:
    """Return the raw ``flags`` integer of the plist metadata, ``0`` if absent."""

    if not metadata:
        return 0

    candidate = metadata.get("flags")
    if candidate is None:
        candidate = metadata.get("Flags")
    if isinstance(candidate, bool):
        return int(candidate)
    if isinstance(candidate, (int, float)):
        return int(candidate)
    if isinstance(candidate, (bytes, bytearray)):
        try:
            return int(candidate.decode("ascii"), 0)
        except (UnicodeDecodeError, ValueError):
            return 0
    if isinstance(candidate, str):
        try:
            return int(candidate, 0)
        except ValueError:
            return 0
    return 0


def decode_flags(value: int, layout: Mapping[str, int] = APPLE_FLAG_BITS) -> frozenset[str]:
    """Return the names of the flags set in ``value`` according to ``layout``."""

    return frozenset(name for name, bit in layout.items() if value >> bit & 1)


def _load_metadata(raw: bytes) -> Mapping[str, Any] | None:
    data = raw.lstrip(b"\r\n")
    if not data:
        return None
    try:
        return plistlib.loads(data)
    except Exception as exc:
        log.debug("Ignoring unreadable plist epilogue: %s", exc)
        return None


__all__ = [
    "APPLE_FLAG_BITS",
    "DEFAULT_CHUNK_SIZE",
    "EmlxReader",
    "EmlxRecord",
    "ReaderState",
    "decode_flags",
    "extract_flags",
    "extract_payload",
    "iter_lines",
    "message_id",
    "read_emlx",
]
