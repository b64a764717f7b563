"""Locate and re-encode attachments that ``.partial.emlx`` files store externally.

Mail.app keeps large parts of partially downloaded messages next to the
``Messages`` directory::

    <mailbox>/Messages/123456.partial.emlx
    <mailbox>/Attachments/123456/1.2/report.pdf

where ``1.2`` is the position of the part in the MIME tree.
"""

from __future__ import annotations

import base64
import logging
import quopri
import re
from pathlib import Path, PurePath
from typing import Sequence

from emlx_converter.errors import AttachmentUnresolvable, UnsupportedEncoding
from emlx_converter.readers.emlx import message_id
from emlx_converter.readers.mime import APPLE_CONTENT_LENGTH, BodyLine, Headers, NodePath, NodeStart
from emlx_converter.rewrite import Substitution

log = logging.getLogger(__name__)

ENCODED_LINE_LENGTH = 76

_PASS_THROUGH_ENCODINGS = frozenset({"7bit", "8bit", "binary"})
_LINEBREAK = re.compile(rb"\r?\n")


def attachments_directory(container: Path) -> Path:
    """Return ``<mailbox>/Attachments/<id>`` for a container in ``<mailbox>/Messages``."""

    return container.absolute().parent.parent / "Attachments" / message_id(container)


def filename_from_directory(directory: Path) -> str | None:
    """Return the only visible file in ``directory``.

    Mail.app names attachments without a declared file name after the system
    language (e.g. ``Mail-Anhang.jpeg``), so the directory is the fallback.
    Dot files such as ``.DS_Store`` are ignored.
    """

    try:
        names = sorted(
            child.name
            for child in directory.iterdir()
            if not child.name.startswith(".") and child.is_file()
        )
    except OSError:
        log.debug("Couldn't read attachments in '%s'", directory)
        return None
    if len(names) != 1:
        log.debug(
            "Couldn't determine attachment; expected '%s' to contain one file, but there were: %s",
            directory,
            ", ".join(names),
        )
        return None
    return names[0]


class AttachmentResolver:
    """Read the externalized content of placeholder parts of one container."""

    def __init__(self, attachments_dir: Path | None) -> None:
        self.attachments_dir = attachments_dir

    @classmethod
    def for_container(cls, container: Path) -> AttachmentResolver:
        return cls(attachments_directory(container))

    def directory_for(self, path: NodePath) -> Path | None:
        if self.attachments_dir is None:
            return None
        return self.attachments_dir / ".".join(str(index) for index in path)

    def candidates(self, headers: Headers, path: NodePath) -> list[str]:
        names = []
        declared = headers.filename
        if declared:
            names.append(declared)
        directory = self.directory_for(path)
        if directory is not None:
            found = filename_from_directory(directory)
            if found:
                names.append(found)
        return names

    def resolve(self, headers: Headers, path: NodePath) -> bytes:
        """Return the raw attachment bytes, trying each candidate name in order."""

        names = self.candidates(headers, path)
        directory = self.directory_for(path)
        if directory is not None:
            for name in names:
                if PurePath(name).name != name:
                    log.debug("Ignoring attachment name with path components: %r", name)
                    continue
                try:
                    return (directory / name).read_bytes()
                except OSError as exc:
                    log.debug("Could not read %s: %s", directory / name, exc)
        raise AttachmentUnresolvable(names)


def encode_body(data: bytes, encoding: str | None) -> list[bytes]:
    """Encode ``data`` for ``Content-Transfer-Encoding: encoding`` as body lines."""

    # 7bit is the default when no transfer encoding is declared
    normalized = (encoding or "7bit").strip().lower()
    if normalized == "base64":
        encoded = base64.b64encode(data)
        lines = [
            encoded[start : start + ENCODED_LINE_LENGTH]
            for start in range(0, len(encoded), ENCODED_LINE_LENGTH)
        ]
        return lines or [b""]
    if normalized == "quoted-printable":
        # soft line breaks keep every line within 76 characters
        return _LINEBREAK.split(quopri.encodestring(data))
    if normalized in _PASS_THROUGH_ENCODINGS:
        return _LINEBREAK.split(data)
    raise UnsupportedEncoding(encoding or normalized)


class PlaceholderInterceptor:
    """Splice externalized attachment content into placeholder parts."""

    def __init__(self, resolver: AttachmentResolver, *, ignore_errors: bool = False) -> None:
        self.resolver = resolver
        self.ignore_errors = ignore_errors
        self.warnings: list[str] = []

    def wants(self, node: NodeStart) -> bool:
        return bool(node.path) and APPLE_CONTENT_LENGTH in node.headers

    def substitute(self, node: NodeStart, diverted: Sequence[BodyLine]) -> Substitution:
        try:
            data = self.resolver.resolve(node.headers, node.path)
        except AttachmentUnresolvable as exc:
            if not self.ignore_errors:
                raise
            log.debug("Part %s: %s", ".".join(map(str, node.path)), exc.message)
            self.warnings.append(exc.message)
            data = b""
        lines = encode_body(data, node.headers.transfer_encoding)
        return Substitution(headers=node.headers.without(APPLE_CONTENT_LENGTH), lines=lines)


__all__ = [
    "ENCODED_LINE_LENGTH",
    "AttachmentResolver",
    "PlaceholderInterceptor",
    "attachments_directory",
    "encode_body",
    "filename_from_directory",
]
