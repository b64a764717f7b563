"""Helpers for writing MIME event streams as ``.eml`` files."""

from __future__ import annotations

import io
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator

from emlx_converter.errors import InconsistentBoundary
from emlx_converter.readers.mime import (
    BodyLine,
    Delimiter,
    HeaderField,
    MimeEvent,
    NodeEnd,
    NodeStart,
)

CRLF = b"\r\n"

_LINEBREAK = re.compile(r"\r?\n")


def fold_header(name: str, value: str) -> list[bytes]:
    """Return the lines of a header field, indenting continuation lines."""

    first, *rest = _LINEBREAK.split(value)
    lines = [f"{name}: {first}"]
    lines.extend(line if line[:1] in (" ", "\t") else f"\t{line}" for line in rest)
    return [line.encode("utf-8", "surrogateescape") for line in lines]


def header_lines(field: HeaderField) -> list[bytes]:
    if field.raw:
        return list(field.raw)
    return fold_header(field.name, field.value)


class EmlWriter:
    """Serialize MIME events to ``sink`` with CRLF line endings.

    Synthetic blank lines are dropped, a nested multipart is always followed by
    a blank line and blank lines at the very end of the message are discarded,
    so the output ends with exactly one line break.
    """

    def __init__(self, sink: BinaryIO) -> None:
        self._sink = sink
        self._boundaries: list[str | None] = []
        self._paths: list[tuple[int, ...]] = []
        self._blank_lines = 0

    def write(self, event: MimeEvent) -> None:
        if isinstance(event, NodeStart):
            self._flush_blank_lines()
            for field in event.headers:
                for line in header_lines(field):
                    self._line(line)
            self._line(b"")
            self._boundaries.append(event.boundary)
            self._paths.append(event.path)
        elif isinstance(event, BodyLine):
            if event.synthetic:
                return
            if event.data == b"":
                self._blank_lines += 1
                return
            self._flush_blank_lines()
            self._line(event.data)
        elif isinstance(event, Delimiter):
            expected = self._boundaries[-1] if self._boundaries else None
            if expected is None:
                raise ValueError(f"Delimiter '{event.boundary}' outside of a multipart")
            if event.boundary != expected:
                raise InconsistentBoundary(expected, event.boundary)
            self._flush_blank_lines()
            token = b"--" + event.boundary.encode("utf-8", "surrogateescape")
            self._line(token + b"--" if event.closing else token)
        elif isinstance(event, NodeEnd):
            boundary = self._boundaries.pop()
            path = self._paths.pop()
            if boundary is not None and path:
                self._blank_lines = max(self._blank_lines, 1)

    def write_all(self, events: Iterable[MimeEvent]) -> None:
        for event in events:
            self.write(event)
        self.close()

    def close(self) -> None:
        self._blank_lines = 0
        self._sink.flush()

    def _flush_blank_lines(self) -> None:
        while self._blank_lines:
            self._line(b"")
            self._blank_lines -= 1

    def _line(self, data: bytes) -> None:
        self._sink.write(data)
        self._sink.write(CRLF)


def serialize(events: Iterable[MimeEvent]) -> bytes:
    """Return the serialized message for ``events``."""

    buffer = io.BytesIO()
    EmlWriter(buffer).write_all(events)
    return buffer.getvalue()


@contextmanager
def atomic_output(destination: Path) -> Iterator[BinaryIO]:
    """Yield a handle whose content replaces ``destination`` only on success."""

    destination.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "wb",
        dir=destination.parent,
        prefix=f".{destination.name}.",
        suffix=".tmp",
        delete=False,
    )
    temp_path = Path(handle.name)
    try:
        with handle:
            yield handle
        os.replace(temp_path, destination)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


__all__ = [
    "CRLF",
    "EmlWriter",
    "atomic_output",
    "fold_header",
    "header_lines",
    "serialize",
]
