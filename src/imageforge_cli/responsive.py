from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .errors import InputValidationError

MIN_WIDTH = 1
MAX_WIDTH = 16_384
MAX_WIDTH_COUNT = 16

# EXIF orientations 5-8 are transposed or rotated by a quarter turn.
QUARTER_TURN_ORIENTATIONS = frozenset({5, 6, 7, 8})

_INTEGER_RE = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class EffectiveDimensions:
    width: int
    height: int

    @property
    def aspect_ratio(self) -> float:
        if self.height <= 0:
            return 0.0
        return round(self.width / self.height, 3)

    def height_for(self, width: int) -> int:
        if self.width <= 0:
            return 0
        return max(1, round(self.height * width / self.width))


def resolve_oriented_dimensions(
    raw_width: Optional[int],
    raw_height: Optional[int],
    orientation: Optional[int],
) -> EffectiveDimensions:
    width = raw_width or 0
    height = raw_height or 0
    if orientation in QUARTER_TURN_ORIENTATIONS:
        return EffectiveDimensions(width=height, height=width)
    return EffectiveDimensions(width=width, height=height)


def normalize_widths(requested: Iterable[int]) -> list[int]:
    return sorted(set(requested))


def resolve_effective_widths(source_width: int, normalized: Optional[Sequence[int]]) -> list[int]:
    """Widths that can be generated from a source without upscaling.

    Falls back to the source width itself when every requested width is larger.
    """
    if not normalized:
        return [source_width]
    eligible = [w for w in normalize_widths(normalized) if w <= source_width]
    return eligible or [source_width]


def validate_widths(widths: Sequence[int], source: str = "--widths") -> list[int]:
    if len(widths) == 0:
        raise InputValidationError(f"Invalid widths in {source}: must include at least one width.")
    for w in widths:
        if isinstance(w, bool) or not isinstance(w, int):
            raise InputValidationError(f"Invalid width {w!r} in {source}: expected a valid integer.")
        if w < MIN_WIDTH or w > MAX_WIDTH:
            raise InputValidationError(
                f"Invalid width {w} in {source}: must be between {MIN_WIDTH} and {MAX_WIDTH}."
            )
    normalized = normalize_widths(widths)
    if len(normalized) > MAX_WIDTH_COUNT:
        raise InputValidationError(
            f"Invalid widths in {source}: received {len(normalized)} unique widths. "
            f"Maximum is {MAX_WIDTH_COUNT}."
        )
    return normalized


def parse_widths(raw: str) -> list[int]:
    values: list[int] = []
    for token in raw.split(","):
        token = token.strip()
        if not token:
            raise InputValidationError(f'Invalid widths: empty value in "{raw}".')
        if not _INTEGER_RE.fullmatch(token):
            raise InputValidationError(f'Invalid width "{token}": expected a valid integer.')
        values.append(int(token))
    return validate_widths(values)
