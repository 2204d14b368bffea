from __future__ import annotations

import os
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Sequence

from .cache import compute_fingerprint
from .discovery import SourceDescriptor, relative_posix
from .errors import CollisionError
from .responsive import EffectiveDimensions, resolve_effective_widths
from .schema import ProcessOptions


@dataclass(frozen=True)
class PlannedOutput:
    format: str
    width: int
    height: int
    path: str
    full_path: Path


@dataclass(frozen=True)
class ImagePlan:
    source: SourceDescriptor
    dimensions: EffectiveDimensions
    widths: Optional[tuple[int, ...]]
    outputs: dict[str, tuple[PlannedOutput, ...]]
    fingerprint: str

    @property
    def responsive(self) -> bool:
        return self.widths is not None

    def primary(self, fmt: str) -> PlannedOutput:
        return self.outputs[fmt][-1]

    def all_outputs(self) -> Iterator[PlannedOutput]:
        for fmt in self.outputs:
            yield from self.outputs[fmt]


@dataclass
class BatchPlan:
    input_dir: Path
    output_dir: Path
    options: ProcessOptions
    images: list[ImagePlan] = field(default_factory=list)


def output_path_for(relative_path: str, fmt: str, width: Optional[int] = None) -> str:
    parsed = PurePosixPath(relative_path)
    suffix = f".w{width}.{fmt}" if width is not None else f".{fmt}"
    return str(parsed.with_name(parsed.stem + suffix))


def resolve_output_path(
    relative_path: str,
    fmt: str,
    input_dir: Path,
    output_dir: Path,
    width: Optional[int] = None,
) -> tuple[str, Path]:
    """Return the input-root-relative manifest path and the physical path."""
    inside_out_dir = output_path_for(relative_path, fmt, width)
    full_path = Path(os.path.normpath(output_dir / inside_out_dir))
    return relative_posix(full_path, input_dir), full_path


def collision_key(path: str) -> str:
    return unicodedata.normalize("NFC", path).casefold()


def plan_image(
    source: SourceDescriptor,
    options: ProcessOptions,
    input_dir: Path,
    output_dir: Path,
) -> ImagePlan:
    dims = source.dimensions
    widths: Optional[tuple[int, ...]] = None
    if options.widths:
        widths = tuple(resolve_effective_widths(dims.width, options.widths))

    outputs: dict[str, tuple[PlannedOutput, ...]] = {}
    for fmt in options.formats:
        planned: list[PlannedOutput] = []
        for width in widths or (None,):
            rel, full = resolve_output_path(source.relative_path, fmt, input_dir, output_dir, width)
            planned.append(
                PlannedOutput(
                    format=fmt,
                    width=width if width is not None else dims.width,
                    height=dims.height_for(width) if width is not None else dims.height,
                    path=rel,
                    full_path=full,
                )
            )
        outputs[fmt] = tuple(planned)

    output_root = relative_posix(output_dir, input_dir)
    return ImagePlan(
        source=source,
        dimensions=dims,
        widths=widths,
        outputs=outputs,
        fingerprint=compute_fingerprint(source, options, output_root),
    )


def detect_collisions(plans: Sequence[ImagePlan]) -> None:
    planned: dict[str, tuple[str, str]] = {}
    for plan in plans:
        for out in plan.all_outputs():
            key = collision_key(out.path)
            existing = planned.get(key)
            if existing is not None and existing[0] != plan.source.relative_path:
                raise CollisionError(existing, (plan.source.relative_path, out.path))
            planned[key] = (plan.source.relative_path, out.path)


def plan_batch(
    sources: Sequence[SourceDescriptor],
    options: ProcessOptions,
    input_dir: Path,
    output_dir: Path,
) -> BatchPlan:
    """Plan every output of the batch and reject case-insensitive path collisions.

    This is the barrier phase: it finishes before any output is written, and
    check mode and real runs both go through it.
    """
    batch = BatchPlan(input_dir=input_dir, output_dir=output_dir, options=options)
    for source in sorted(sources, key=lambda s: s.relative_path):
        batch.images.append(plan_image(source, options, input_dir, output_dir))
    detect_collisions(batch.images)
    return batch
