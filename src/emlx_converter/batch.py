"""Convert every Apple Mail container below a directory."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from tqdm import tqdm

from emlx_converter.convert import convert_file, output_name
from emlx_converter.errors import ConversionError, DeletedMessageSkipped


@dataclass
class BatchStats:
    """Summary information produced by a conversion run."""

    converted: int = 0
    skipped_deleted: int = 0
    failed: int = 0
    warnings: list[tuple[Path, str]] = field(default_factory=list)
    errors: list[tuple[Path, str]] = field(default_factory=list)


def discover_containers(input_dir: Path) -> list[Path]:
    """Return the ``.emlx`` and ``.partial.emlx`` files below ``input_dir``."""

    if not input_dir.exists():
        raise FileNotFoundError(f"Input directory not found: {input_dir}")
    return sorted(path for path in input_dir.glob("**/*.emlx") if path.is_file())


def convert_directory(
    input_dir: Path,
    output_dir: Path,
    *,
    ignore_errors: bool = False,
    skip_deleted: bool = False,
    show_progress: bool = True,
) -> BatchStats:
    """Convert all containers below ``input_dir`` into ``output_dir/<id>.eml``.

    Without ``ignore_errors`` the first failing container aborts the run; files
    converted before it are kept. With ``ignore_errors`` failures are counted
    and reported and the run continues.
    """

    containers = discover_containers(input_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stats = BatchStats()

    progress = tqdm(
        total=len(containers),
        disable=not show_progress,
        unit="msg",
        desc="Converting",
    )

    for container in containers:
        relative = container.relative_to(input_dir)
        progress.set_postfix_str(str(relative), refresh=False)
        destination = output_dir / output_name(container)
        try:
            result = convert_file(
                container,
                destination,
                ignore_errors=ignore_errors,
                skip_deleted=skip_deleted,
            )
        except DeletedMessageSkipped:
            stats.skipped_deleted += 1
            progress.update(1)
            continue
        except (ConversionError, OSError) as exc:
            if not ignore_errors:
                progress.close()
                print(
                    f"Encountered error when processing {relative} -- run with "
                    "'--ignore-errors' to avoid aborting the conversion."
                )
                raise
            stats.failed += 1
            stats.errors.append((container, str(exc)))
            progress.write(f"Skipped file {relative}: {exc}")
            progress.update(1)
            continue

        for warning in result.warnings:
            stats.warnings.append((container, warning))
            progress.write(f"[warn] {relative}: {warning}")
        stats.converted += 1
        progress.update(1)

    progress.close()
    return stats


__all__ = ["BatchStats", "convert_directory", "discover_containers"]
