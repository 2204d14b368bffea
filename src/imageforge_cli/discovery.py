from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Optional, Sequence

from .cache import ContentHash, source_identity
from .metadata import ImageMetadata, read_image_metadata
from .responsive import EffectiveDimensions, resolve_oriented_dimensions
from .schema import SourceIdentity

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".tiff", ".tif"})
IGNORED_DIRS = frozenset({".git", "node_modules", ".next", "dist", "build", ".turbo"})

MetadataReader = Callable[[Path], ImageMetadata]


@dataclass(frozen=True)
class SourceDescriptor:
    path: Path
    relative_path: str
    size: int
    identity: ContentHash
    raw_width: int
    raw_height: int
    orientation: Optional[int] = None

    @property
    def dimensions(self) -> EffectiveDimensions:
        return resolve_oriented_dimensions(self.raw_width, self.raw_height, self.orientation)


def to_posix(path: str | Path) -> str:
    return str(path).replace(os.sep, "/").replace("\\", "/")


def relative_posix(path: Path, root: Path) -> str:
    return to_posix(os.path.relpath(path, root))


def is_image_file(path: str | Path) -> bool:
    return Path(path).suffix.lower() in IMAGE_EXTENSIONS


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            if pattern[i + 1 : i + 3] == "*/":
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern[i + 1 : i + 2] == "*":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out))


def normalize_glob(pattern: str) -> str:
    pattern = to_posix(pattern.strip())
    while pattern.startswith("./"):
        pattern = pattern[2:]
    return pattern


def compile_globs(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    return [_glob_to_regex(normalize_glob(p)) for p in patterns if p.strip()]


def matches_any(relative_path: str, compiled: Sequence[re.Pattern[str]]) -> bool:
    candidate = str(PurePosixPath(to_posix(relative_path)))
    return any(p.fullmatch(candidate) for p in compiled)


def discover_images(
    input_dir: Path,
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
) -> list[Path]:
    """Find source images below ``input_dir``, sorted by input-relative path.

    Symlinks, hidden directories and common build directories are skipped.
    ``exclude`` patterns win over ``include`` patterns.
    """
    include_re = compile_globs(include)
    exclude_re = compile_globs(exclude)
    found: list[Path] = []

    for current, dirnames, filenames in os.walk(input_dir, followlinks=False):
        current_path = Path(current)
        dirnames[:] = sorted(
            d
            for d in dirnames
            if not d.startswith(".")
            and d not in IGNORED_DIRS
            and not (current_path / d).is_symlink()
        )
        for name in filenames:
            full = current_path / name
            if full.is_symlink() or not is_image_file(name):
                continue
            rel = relative_posix(full, input_dir)
            if include_re and not matches_any(rel, include_re):
                continue
            if exclude_re and matches_any(rel, exclude_re):
                logger.debug(f"Excluded by pattern: {rel}")
                continue
            found.append(full)

    return sorted(found, key=lambda p: relative_posix(p, input_dir))


def describe_source(
    path: Path,
    input_dir: Path,
    identity: SourceIdentity = "content",
    read_metadata: MetadataReader = read_image_metadata,
) -> SourceDescriptor:
    meta = read_metadata(path)
    return SourceDescriptor(
        path=path,
        relative_path=relative_posix(path, input_dir),
        size=path.stat().st_size,
        identity=source_identity(path, identity),
        raw_width=meta.width,
        raw_height=meta.height,
        orientation=meta.orientation,
    )
