"""Line based MIME tokenizer producing a stream of node events.

The tokenizer never holds more than one header block in memory: bodies are
passed on line by line as :class:`BodyLine` events, framed by
:class:`NodeStart` / :class:`NodeEnd` and the :class:`Delimiter` lines of the
enclosing multiparts. :func:`build_tree` collects the events into
:class:`Leaf` / :class:`Multipart` nodes when a whole message is wanted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.message import Message
from typing import Iterable, Iterator, Sequence, Union

from emlx_converter.errors import InconsistentBoundary
from emlx_converter.readers.boundaries import RepairedLine

APPLE_CONTENT_LENGTH = "X-Apple-Content-Length"

NodePath = tuple[int, ...]

_LINEBREAK = re.compile(r"\r?\n")


@dataclass(frozen=True)
class HeaderField:
    """One header field; ``raw`` holds the original lines when it was parsed."""

    name: str
    value: str
    raw: tuple[bytes, ...] = ()

    @classmethod
    def parse(cls, lines: Sequence[bytes]) -> HeaderField:
        text = b"\r\n".join(lines).decode("utf-8", "surrogateescape")
        name, separator, value = text.partition(":")
        if not separator:
            return cls(name="", value=text, raw=tuple(lines))
        return cls(name=name.strip(), value=value.lstrip(" \t"), raw=tuple(lines))


class Headers:
    """Ordered header fields with case-insensitive lookup."""

    def __init__(self, fields: Iterable[HeaderField] = ()) -> None:
        self._fields = list(fields)

    @classmethod
    def parse(cls, lines: Iterable[bytes]) -> Headers:
        grouped: list[list[bytes]] = []
        for line in lines:
            if grouped and line[:1] in (b" ", b"\t"):
                grouped[-1].append(line)
            else:
                grouped.append([line])
        return cls(HeaderField.parse(group) for group in grouped)

    def __iter__(self) -> Iterator[HeaderField]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and any(
            f.name.lower() == name.lower() for f in self._fields
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._fields == other._fields

    def __repr__(self) -> str:
        return f"Headers({[(f.name, f.value) for f in self._fields]!r})"

    def get(self, name: str, default: str | None = None) -> str | None:
        values = self.get_all(name)
        return values[0] if values else default

    def get_all(self, name: str) -> list[str]:
        lowered = name.lower()
        return [f.value for f in self._fields if f.name.lower() == lowered]

    def without(self, name: str) -> Headers:
        lowered = name.lower()
        return Headers(f for f in self._fields if f.name.lower() != lowered)

    @property
    def content_type(self) -> str:
        return self._as_message().get_content_type()

    @property
    def boundary(self) -> str | None:
        """Return the boundary token of a multipart, ``None`` for leaves."""

        message = self._as_message()
        if message.get_content_maintype() != "multipart":
            return None
        return message.get_boundary()

    @property
    def filename(self) -> str | None:
        """Return the declared attachment file name.

        ``Content-Disposition`` ``filename`` wins over the ``Content-Type``
        ``name`` parameter; RFC 2231 parameters and RFC 2047 encoded words are
        decoded.
        """

        filename = self._as_message().get_filename()
        if not filename:
            return None
        try:
            return str(make_header(decode_header(filename)))
        except (HeaderParseError, LookupError, UnicodeError):
            return filename

    @property
    def transfer_encoding(self) -> str:
        value = self.get("Content-Transfer-Encoding")
        if value is None or not value.strip():
            return "7bit"
        return _unfold(value).strip().lower()

    def _as_message(self) -> Message:
        # only the headers we need parameters from; values are unfolded first
        message = Message()
        for name in ("Content-Type", "Content-Disposition"):
            value = self.get(name)
            if value is not None:
                message[name] = _unfold(value)
        return message


@dataclass(frozen=True)
class NodeStart:
    path: NodePath
    headers: Headers
    boundary: str | None = None

    @property
    def is_multipart(self) -> bool:
        return self.boundary is not None


@dataclass(frozen=True)
class BodyLine:
    data: bytes
    synthetic: bool = False


@dataclass(frozen=True)
class Delimiter:
    boundary: str
    closing: bool = False


@dataclass(frozen=True)
class NodeEnd:
    path: NodePath


MimeEvent = Union[NodeStart, BodyLine, Delimiter, NodeEnd]


@dataclass
class _Frame:
    path: NodePath
    boundary: str | None
    delimiter: bytes | None
    children: int = 0
    closed: bool = False


def tokenize(lines: Iterable[RepairedLine | bytes]) -> Iterator[MimeEvent]:
    """Yield node events for the payload ``lines`` in document order."""

    stack: list[_Frame] = []
    header_lines: list[bytes] | None = []
    pending_path: NodePath = ()

    for item in lines:
        if isinstance(item, RepairedLine):
            line, synthetic = item.data, item.synthetic
        else:
            line, synthetic = item, False

        found = _find_delimiter(stack, line)
        if header_lines is not None:
            if line == b"":
                yield _open_node(stack, pending_path, header_lines)
                header_lines = None
                continue
            if found is None:
                header_lines.append(line)
                continue
            # a delimiter cuts the header block short
            yield _open_node(stack, pending_path, header_lines)
            header_lines = None

        if found is None:
            yield BodyLine(line, synthetic)
            continue

        index, closing = found
        while len(stack) - 1 > index:
            yield NodeEnd(stack.pop().path)
        frame = stack[-1]
        yield Delimiter(frame.boundary, closing)
        if closing:
            frame.closed = True
        else:
            frame.children += 1
            pending_path = frame.path + (frame.children,)
            header_lines = []

    if header_lines is not None and (header_lines or not stack):
        yield _open_node(stack, pending_path, header_lines)
    while stack:
        yield NodeEnd(stack.pop().path)


def _open_node(stack: list[_Frame], path: NodePath, header_lines: list[bytes]) -> NodeStart:
    headers = Headers.parse(header_lines)
    boundary = headers.boundary
    delimiter = None
    if boundary is not None:
        delimiter = b"--" + boundary.encode("utf-8", "surrogateescape")
    stack.append(_Frame(path=path, boundary=boundary, delimiter=delimiter))
    return NodeStart(path=path, headers=headers, boundary=boundary)


def _find_delimiter(stack: Sequence[_Frame], line: bytes) -> tuple[int, bool] | None:
    if not line.startswith(b"--"):
        return None
    candidate = line.rstrip(b" \t")
    for index in range(len(stack) - 1, -1, -1):
        frame = stack[index]
        if frame.delimiter is None or frame.closed:
            continue
        if candidate == frame.delimiter:
            return index, False
        if candidate == frame.delimiter + b"--":
            return index, True
    return None


@dataclass
class Leaf:
    headers: Headers
    body: list[BodyLine] = field(default_factory=list)
    path: NodePath = ()

    @property
    def is_placeholder(self) -> bool:
        return APPLE_CONTENT_LENGTH in self.headers


@dataclass
class Part:
    """A child of a multipart together with the token of its opening delimiter."""

    boundary: str
    node: Leaf | Multipart


@dataclass
class Multipart:
    headers: Headers
    boundary: str
    preamble: list[BodyLine] = field(default_factory=list)
    parts: list[Part] = field(default_factory=list)
    epilogue: list[BodyLine] = field(default_factory=list)
    closed: bool = False
    path: NodePath = ()


Node = Union[Leaf, Multipart]


def build_tree(events: Iterable[MimeEvent]) -> Node:
    """Collect a complete event stream into a node tree."""

    stack: list[Node] = []
    delimiters: list[str | None] = []
    root: Node | None = None

    for event in events:
        if isinstance(event, NodeStart):
            node: Node
            if event.boundary is not None:
                node = Multipart(headers=event.headers, boundary=event.boundary, path=event.path)
            else:
                node = Leaf(headers=event.headers, path=event.path)
            if stack:
                parent = stack[-1]
                if not isinstance(parent, Multipart):
                    raise ValueError(f"Node {event.path} started inside leaf {parent.path}")
                parent.parts.append(Part(boundary=delimiters[-1] or parent.boundary, node=node))
            stack.append(node)
            delimiters.append(None)
        elif isinstance(event, BodyLine):
            current = stack[-1]
            if isinstance(current, Leaf):
                current.body.append(event)
            elif current.closed:
                current.epilogue.append(event)
            else:
                current.preamble.append(event)
        elif isinstance(event, Delimiter):
            delimiters[-1] = event.boundary
            if event.closing:
                stack[-1].closed = True
        elif isinstance(event, NodeEnd):
            delimiters.pop()
            node = stack.pop()
            if not stack:
                root = node

    if root is None:
        raise ValueError("Event stream did not contain a complete root node")
    return root


def iter_tree_events(node: Node) -> Iterator[MimeEvent]:
    """Yield the events of ``node``; sibling parts must share one boundary token."""

    if isinstance(node, Leaf):
        yield NodeStart(path=node.path, headers=node.headers)
        yield from node.body
        yield NodeEnd(node.path)
        return

    yield NodeStart(path=node.path, headers=node.headers, boundary=node.boundary)
    yield from node.preamble
    boundary: str | None = None
    for part in node.parts:
        if boundary is not None and part.boundary != boundary:
            raise InconsistentBoundary(boundary, part.boundary)
        boundary = part.boundary
        yield Delimiter(part.boundary)
        yield from iter_tree_events(part.node)
    if node.closed:
        yield Delimiter(boundary or node.boundary, closing=True)
    yield from node.epilogue
    yield NodeEnd(node.path)


def _unfold(value: str) -> str:
    return _LINEBREAK.sub("", value)


__all__ = [
    "APPLE_CONTENT_LENGTH",
    "BodyLine",
    "Delimiter",
    "HeaderField",
    "Headers",
    "Leaf",
    "MimeEvent",
    "Multipart",
    "Node",
    "NodeEnd",
    "NodePath",
    "NodeStart",
    "Part",
    "build_tree",
    "iter_tree_events",
    "tokenize",
]
