"""Repairs for the multipart framing Mail.app writes into ``.emlx`` payloads.

Mail.app does not always put a blank line in front of a boundary delimiter and
occasionally truncates the final close-delimiter to a single trailing hyphen.
Both are fixed here before the payload reaches the MIME tokenizer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Iterator

_BOUNDARY_PARAM = re.compile(rb'boundary\s*=\s*(?:"([^"]+)"|([^\s;"]+))', re.IGNORECASE)
_CONTENT_TYPE_NAME = re.compile(rb"content-type:", re.IGNORECASE)
_CANONICAL_CONTENT_TYPE = b"Content-Type:"


@dataclass(frozen=True)
class RepairedLine:
    """A payload line; ``synthetic`` marks blank lines inserted by the repairer."""

    data: bytes
    synthetic: bool = False


@dataclass(frozen=True)
class RepairResult:
    lines: list[bytes]
    synthetic: frozenset[int]


class BoundaryRepairer:
    """Streaming repair pass over the lines of one payload.

    Only tokens declared in a ``boundary=`` parameter of a ``Content-Type``
    header take part; lines that merely look like delimiters are left alone.
    """

    def __init__(self) -> None:
        self.boundaries: list[bytes] = []
        self._open: set[bytes] = set()
        self._delimiters: set[bytes] = set()

    def iter_repaired(self, lines: Iterable[bytes]) -> Iterator[RepairedLine]:
        previous: bytes | None = None
        held: bytes | None = None
        in_top_headers = True
        in_content_type = False

        for line in lines:
            # one line is held back; the close-delimiter fix applies to the last one only
            if held is not None:
                yield from self._emit(held, previous, last=False)
                previous = held

            if in_top_headers:
                if line == b"":
                    in_top_headers = False
                else:
                    line = _normalize_content_type(line)

            if _CONTENT_TYPE_NAME.match(line):
                in_content_type = True
            elif line[:1] not in (b" ", b"\t"):
                in_content_type = False
            if in_content_type:
                self._register(line)
            held = line

        if held is not None:
            yield from self._emit(held, previous, last=True)

    def _emit(self, line: bytes, previous: bytes | None, *, last: bool) -> Iterator[RepairedLine]:
        if last and line not in self._delimiters and line.endswith(b"-") and line[:-1] in self._open:
            line += b"-"
        if line in self._delimiters and previous is not None and previous != b"":
            yield RepairedLine(b"", synthetic=True)
        yield RepairedLine(line)

    def _register(self, line: bytes) -> None:
        for match in _BOUNDARY_PARAM.finditer(line):
            token = match.group(1) or match.group(2)
            if token in self.boundaries:
                continue
            self.boundaries.append(token)
            self._open.add(b"--" + token)
            self._delimiters.add(b"--" + token)
            self._delimiters.add(b"--" + token + b"--")


def repair_lines(lines: Iterable[bytes]) -> RepairResult:
    """Return the repaired lines and the indexes of the blank lines that were inserted."""

    repaired: list[bytes] = []
    synthetic: set[int] = set()
    for item in BoundaryRepairer().iter_repaired(lines):
        if item.synthetic:
            synthetic.add(len(repaired))
        repaired.append(item.data)
    return RepairResult(lines=repaired, synthetic=frozenset(synthetic))


def _normalize_content_type(line: bytes) -> bytes:
    # some MIME parsers only recognise the header in its canonical casing
    if _CONTENT_TYPE_NAME.match(line) and not line.startswith(_CANONICAL_CONTENT_TYPE):
        return _CANONICAL_CONTENT_TYPE + line[len(_CANONICAL_CONTENT_TYPE) :]
    return line


__all__ = ["BoundaryRepairer", "RepairResult", "RepairedLine", "repair_lines"]
