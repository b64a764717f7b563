"""Exceptions raised while converting Apple Mail containers."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence


class ConversionError(Exception):
    """Base class for failures that abort the conversion of one container."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path is None:
            return self.message
        return f"{self.message} ({self.path})"


class MalformedContainer(ConversionError):
    """The leading byte count is missing, unparseable or larger than the file."""


class InconsistentBoundary(ConversionError):
    """Sibling parts of one multipart declare different boundary tokens."""

    def __init__(self, expected: str, actual: str, *, path: Path | None = None) -> None:
        super().__init__(
            f"Different boundary strings (expected '{expected}', got: '{actual}')",
            path=path,
        )
        self.expected = expected
        self.actual = actual


class AttachmentUnresolvable(ConversionError):
    """None of the candidate files for an externalized attachment could be read."""

    def __init__(self, candidates: Sequence[str], *, path: Path | None = None) -> None:
        super().__init__(
            f"Could not get attachment file (tried {', '.join(candidates)})",
            path=path,
        )
        self.candidates = tuple(candidates)


class UnsupportedEncoding(ConversionError):
    """A placeholder declares a transfer encoding we cannot produce."""

    def __init__(self, encoding: str, *, path: Path | None = None) -> None:
        super().__init__(f"Unimplemented encoding: {encoding}", path=path)
        self.encoding = encoding


class DeletedMessageSkipped(ConversionError):
    """Raised when the skip-deleted policy excludes a message flagged as deleted."""

    def __init__(self, *, path: Path | None = None) -> None:
        super().__init__("Message is flagged as deleted", path=path)


__all__ = [
    "AttachmentUnresolvable",
    "ConversionError",
    "DeletedMessageSkipped",
    "InconsistentBoundary",
    "MalformedContainer",
    "UnsupportedEncoding",
]
