"""Convert a single Apple Mail container into a self-contained ``.eml`` message."""

from __future__ import annotations

import io
import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Mapping

from emlx_converter.attachments import AttachmentResolver, PlaceholderInterceptor
from emlx_converter.errors import ConversionError, DeletedMessageSkipped
from emlx_converter.readers import emlx
from emlx_converter.readers.boundaries import BoundaryRepairer
from emlx_converter.readers.mime import tokenize
from emlx_converter.rewrite import NodeRewriter
from emlx_converter.writers.eml import EmlWriter, atomic_output

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of a successful conversion."""

    warnings: list[str] = field(default_factory=list)
    flags: frozenset[str] = frozenset()
    metadata: Mapping[str, Any] | None = None
    substitutions: int = 0


def convert_emlx(
    source: Path | bytes,
    sink: BinaryIO,
    *,
    ignore_errors: bool = False,
    skip_deleted: bool = False,
    attachments_dir: Path | None = None,
) -> ConversionResult:
    """Stream the ``.eml`` rendition of ``source`` into ``sink``.

    ``source`` is the path of an ``.emlx`` / ``.partial.emlx`` file or its raw
    bytes. Externalized attachments are looked up in ``attachments_dir``,
    which defaults to the ``Attachments`` directory next to the container's
    ``Messages`` directory.

    With ``ignore_errors`` a missing attachment is replaced by an empty body
    and reported in :attr:`ConversionResult.warnings`; all other errors are
    raised. With ``skip_deleted`` a message flagged as deleted raises
    :class:`DeletedMessageSkipped`; if that is only detected after streaming
    (non-seekable input) whatever was written to ``sink`` must be discarded.
    """

    path = source if isinstance(source, Path) else None
    if attachments_dir is None and path is not None:
        resolver = AttachmentResolver.for_container(path)
    else:
        resolver = AttachmentResolver(attachments_dir)
    interceptor = PlaceholderInterceptor(resolver, ignore_errors=ignore_errors)

    try:
        with ExitStack() as stack:
            if path is not None:
                handle = stack.enter_context(path.open("rb"))
            else:
                handle = io.BytesIO(source)

            reader = emlx.EmlxReader(handle)
            reader.read_header()
            if skip_deleted:
                metadata = reader.peek_metadata()
                if "deleted" in emlx.decode_flags(emlx.extract_flags(metadata)):
                    raise DeletedMessageSkipped()

            lines = emlx.iter_lines(reader.iter_payload())
            events = tokenize(BoundaryRepairer().iter_repaired(lines))
            rewriter = NodeRewriter(interceptor)
            EmlWriter(sink).write_all(rewriter.rewrite(events))

            flags = reader.flags
            if skip_deleted and "deleted" in flags:
                raise DeletedMessageSkipped()
    except ConversionError as exc:
        if exc.path is None:
            exc.path = path
        raise

    if rewriter.substitutions:
        log.debug("Spliced %d attachment(s) into %s", rewriter.substitutions, path or "message")

    return ConversionResult(
        warnings=list(interceptor.warnings),
        flags=flags,
        metadata=reader.metadata,
        substitutions=rewriter.substitutions,
    )


def convert_file(
    source: Path,
    destination: Path,
    *,
    ignore_errors: bool = False,
    skip_deleted: bool = False,
) -> ConversionResult:
    """Convert ``source`` into ``destination``; nothing is left behind on failure."""

    with atomic_output(destination) as handle:
        return convert_emlx(
            source,
            handle,
            ignore_errors=ignore_errors,
            skip_deleted=skip_deleted,
        )


def output_name(source: Path) -> str:
    """Return the ``.eml`` file name for a container, e.g. ``123456.eml``."""

    return f"{emlx.message_id(source)}.eml"


__all__ = ["ConversionResult", "convert_emlx", "convert_file", "output_name"]
