"""Command-line interface for converting Apple Mail containers to ``.eml``."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Callable

from emlx_converter import batch
from emlx_converter.convert import convert_file
from emlx_converter.errors import DeletedMessageSkipped
from emlx_converter.readers import emlx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emlx-converter",
        description=(
            "Convert Apple Mail .emlx and .partial.emlx files into self-contained .eml files."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    convert_parser = subparsers.add_parser(
        "convert",
        help="Convert every .emlx file below a directory.",
    )
    convert_parser.add_argument(
        "input_dir",
        type=Path,
        help="Directory searched recursively for .emlx and .partial.emlx files.",
    )
    convert_parser.add_argument(
        "output_dir",
        type=Path,
        help="Directory receiving one <id>.eml file per converted message.",
    )
    _add_policy_arguments(convert_parser)
    convert_parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bar output during the conversion run.",
    )
    convert_parser.set_defaults(handler=_handle_convert)

    convert_file_parser = subparsers.add_parser(
        "convert-file",
        help="Convert a single .emlx or .partial.emlx file.",
    )
    convert_file_parser.add_argument(
        "source",
        type=Path,
        help="Path to the .emlx or .partial.emlx file.",
    )
    convert_file_parser.add_argument(
        "destination",
        type=Path,
        help="Path of the .eml file to write.",
    )
    _add_policy_arguments(convert_file_parser)
    convert_file_parser.set_defaults(handler=_handle_convert_file)

    flags_parser = subparsers.add_parser(
        "flags",
        help="Show the Mail.app flags stored in an .emlx file.",
    )
    flags_parser.add_argument(
        "source",
        type=Path,
        help="Path to the .emlx or .partial.emlx file.",
    )
    flags_parser.set_defaults(handler=_handle_flags)

    return parser


def _add_policy_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--ignore-errors",
        action="store_true",
        help=(
            "Continue when an attachment file cannot be found (an empty body is "
            "written instead) or a message cannot be converted."
        ),
    )
    parser.add_argument(
        "--skip-deleted",
        action="store_true",
        help="Do not convert messages that Mail.app flagged as deleted.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Increase logging verbosity for troubleshooting.",
    )


Handler = Callable[[argparse.Namespace], int]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "convert":
        args.input_dir = args.input_dir.resolve()
        args.output_dir = args.output_dir.resolve()
        if args.input_dir == args.output_dir:
            parser.error("output_dir must differ from input_dir")
    elif args.command == "convert-file":
        args.source = args.source.resolve()
        args.destination = args.destination.resolve()
    elif args.command == "flags":
        args.source = args.source.resolve()
    else:  # pragma: no cover
        parser.error("Unsupported command")

    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    handler: Handler = args.handler
    return handler(args)


def _handle_convert(args: argparse.Namespace) -> int:
    stats = batch.convert_directory(
        args.input_dir,
        args.output_dir,
        ignore_errors=args.ignore_errors,
        skip_deleted=args.skip_deleted,
        show_progress=not args.no_progress,
    )

    print(f"Conversion complete: {stats.converted} messages written to {args.output_dir}.")
    if stats.warnings:
        print(f"  {len(stats.warnings)} attachment{'s' if len(stats.warnings) != 1 else ''} missing.")
    if stats.skipped_deleted:
        print(f"  Skipped {stats.skipped_deleted} deleted messages.")
    if stats.failed:
        print(f"  Skipped {stats.failed} messages that could not be converted.")
    return 0


def _handle_convert_file(args: argparse.Namespace) -> int:
    source: Path = args.source
    if not source.exists():
        raise FileNotFoundError(f"Message file not found: {source}")

    try:
        result = convert_file(
            source,
            args.destination,
            ignore_errors=args.ignore_errors,
            skip_deleted=args.skip_deleted,
        )
    except DeletedMessageSkipped:
        print(f"Skipped {source}: message is flagged as deleted.")
        return 0

    for warning in result.warnings:
        print(f"[warn] {warning}")
    print(f"Wrote {args.destination}")
    return 0


def _handle_flags(args: argparse.Namespace) -> int:
    source: Path = args.source
    if not source.exists():
        raise FileNotFoundError(f"Message file not found: {source}")

    with source.open("rb") as handle:
        metadata = emlx.EmlxReader(handle).peek_metadata()
    flags = sorted(
        emlx.decode_flags(emlx.extract_flags(metadata)),
        key=lambda name: emlx.APPLE_FLAG_BITS[name],
    )
    if not flags:
        print(f"No flags set in {source}")
        return 0
    print(f"Flags set in {source}:")
    for name in flags:
        print(f"  {name}")
    return 0


if __name__ == "__main__":  # pragma: no cover - manual execution entry point
    raise SystemExit(main())
