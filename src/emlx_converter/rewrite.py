"""Node level interception of a MIME event stream."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Protocol, Sequence

from emlx_converter.readers.mime import BodyLine, Headers, MimeEvent, NodeEnd, NodeStart


@dataclass(frozen=True)
class Substitution:
    """Replacement headers and body lines for an intercepted node."""

    headers: Headers
    lines: Iterable[bytes]


class NodeInterceptor(Protocol):
    def wants(self, node: NodeStart) -> bool:
        ...

    def substitute(self, node: NodeStart, diverted: Sequence[BodyLine]) -> Substitution:
        ...


class NodeRewriter:
    """Pass events through, replacing the leaves an interceptor asks for.

    The body of a wanted leaf is diverted until the leaf ends; only then is the
    interceptor asked for the replacement, which is emitted in full before any
    later event. Multipart nodes are never intercepted.
    """

    def __init__(self, interceptor: NodeInterceptor) -> None:
        self.interceptor = interceptor
        self.substitutions = 0

    def rewrite(self, events: Iterable[MimeEvent]) -> Iterator[MimeEvent]:
        intercepted: NodeStart | None = None
        diverted: list[BodyLine] = []

        for event in events:
            if intercepted is None:
                if (
                    isinstance(event, NodeStart)
                    and not event.is_multipart
                    and self.interceptor.wants(event)
                ):
                    intercepted = event
                    diverted = []
                    continue
                yield event
                continue

            if isinstance(event, BodyLine):
                diverted.append(event)
                continue
            if not isinstance(event, NodeEnd) or event.path != intercepted.path:
                raise ValueError(
                    f"Unexpected {type(event).__name__} inside intercepted node {intercepted.path}"
                )

            substitution = self.interceptor.substitute(intercepted, diverted)
            yield NodeStart(path=intercepted.path, headers=substitution.headers)
            for line in substitution.lines:
                yield BodyLine(line)
            yield event
            self.substitutions += 1
            intercepted = None
            diverted = []


__all__ = ["NodeInterceptor", "NodeRewriter", "Substitution"]
