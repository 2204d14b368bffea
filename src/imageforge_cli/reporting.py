from __future__ import annotations

import os
import shlex
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional, Sequence

from .schema import CacheMode, ProcessOptions

ImageStatus = Literal["processed", "cached", "failed", "needs-processing"]

DEFAULT_OUTPUT = "imageforge.json"
DEFAULT_FORMATS: tuple[str, ...] = ("webp",)
DEFAULT_QUALITY = 80
DEFAULT_BLUR_SIZE = 4
MAX_CONCURRENCY = 8


def default_concurrency() -> int:
    return max(1, min(MAX_CONCURRENCY, os.cpu_count() or 1))


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def sanitize_for_terminal(text: str) -> str:
    """Escape control characters so file names cannot move the cursor or recolor output."""
    out: list[str] = []
    for ch in text:
        if ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        elif ord(ch) < 0x20 or 0x7F <= ord(ch) <= 0x9F:
            out.append(f"\\x{ord(ch):02x}")
        else:
            out.append(ch)
    return "".join(out)


def build_rerun_command(
    input_dir: str,
    options: ProcessOptions,
    output: str = DEFAULT_OUTPUT,
    concurrency: Optional[int] = None,
    cache: CacheMode = "on",
    force_overwrite: bool = False,
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
    out_dir: Optional[str] = None,
) -> str:
    """Build the command line that reproduces a run with every effective option."""
    args = [
        "imageforge",
        "run",
        input_dir,
        "--output",
        output,
        "--formats",
        ",".join(options.formats),
        "--quality",
        str(options.quality),
        "--blur-size",
        str(options.blur_size),
        "--concurrency",
        str(concurrency if concurrency is not None else default_concurrency()),
    ]
    if not options.blur:
        args.append("--no-blur")
    if options.widths:
        args += ["--widths", ",".join(str(w) for w in options.widths)]
    if cache != "on":
        args += ["--cache", cache]
    if force_overwrite:
        args.append("--force-overwrite")
    for pattern in include:
        args += ["--include", pattern]
    for pattern in exclude:
        args += ["--exclude", pattern]
    if out_dir:
        args += ["--out-dir", out_dir]
    return shlex.join(args)


@dataclass
class RunError:
    code: str
    message: str
    file: Optional[str] = None


@dataclass
class RunImageReport:
    file: str
    status: ImageStatus
    fingerprint: Optional[str] = None
    original_size: int = 0
    processed_size: int = 0
    outputs: list[str] = field(default_factory=list)
    reason: str = ""
    error: Optional[RunError] = None


@dataclass
class RunSummary:
    total: int = 0
    processed: int = 0
    cached: int = 0
    failed: int = 0
    needs_processing: int = 0
    total_original_size: int = 0
    total_processed_size: int = 0
    duration_ms: int = 0


@dataclass
class RunReport:
    version: str
    check: bool
    dry_run: bool
    input_dir: str
    output_dir: str
    manifest_path: str
    cache_path: str
    options: dict[str, Any]
    summary: RunSummary = field(default_factory=RunSummary)
    rerun_command: str = ""
    images: list[RunImageReport] = field(default_factory=list)
    errors: list[RunError] = field(default_factory=list)

    def add(self, image: RunImageReport) -> None:
        self.images.append(image)
        s = self.summary
        s.total += 1
        if image.status == "processed":
            s.processed += 1
        elif image.status == "cached":
            s.cached += 1
        elif image.status == "failed":
            s.failed += 1
        else:
            s.needs_processing += 1
        s.total_original_size += image.original_size
        s.total_processed_size += image.processed_size
        if image.error is not None:
            self.errors.append(image.error)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def savings_percent(original: int, processed: int) -> Optional[float]:
    if original <= 0:
        return None
    return round((1 - processed / original) * 100, 1)


def display_path(path: Path) -> str:
    try:
        return sanitize_for_terminal(str(path.relative_to(Path.cwd())))
    except ValueError:
        return sanitize_for_terminal(str(path))
