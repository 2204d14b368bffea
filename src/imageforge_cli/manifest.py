from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

from .errors import ManifestWriteError
from .schema import Manifest, ManifestEntry, ManifestOutput, ManifestVariant
from .store import now_utc_iso

if TYPE_CHECKING:
    from .plan import ImagePlan


@dataclass(frozen=True)
class ProducedOutput:
    format: str
    width: int
    height: int
    path: str
    size: int
    digest: Optional[str] = None


def build_entry(
    plan: ImagePlan,
    produced: Sequence[ProducedOutput],
    blur_data_url: str = "",
) -> ManifestEntry:
    """Build the manifest entry for one image.

    ``outputs.<format>`` is derived from the largest variant, so it always
    points at the primary output.
    """
    outputs: dict[str, ManifestOutput] = {}
    variants: dict[str, list[ManifestVariant]] = {}

    for fmt in plan.outputs:
        items = sorted((p for p in produced if p.format == fmt), key=lambda p: p.width)
        if not items:
            raise ValueError(f"{plan.source.relative_path}: no {fmt} output was produced")
        primary = items[-1]
        outputs[fmt] = ManifestOutput(path=primary.path, size=primary.size)
        variants[fmt] = [
            ManifestVariant(width=p.width, height=p.height, path=p.path, size=p.size) for p in items
        ]

    dims = plan.dimensions
    return ManifestEntry(
        width=dims.width,
        height=dims.height,
        aspect_ratio=dims.aspect_ratio,
        blur_data_url=blur_data_url,
        original_size=plan.source.size,
        outputs=outputs,
        variants=variants if plan.responsive else None,
        hash=plan.fingerprint,
    )


class ManifestBuilder:
    def __init__(self) -> None:
        self._images: dict[str, ManifestEntry] = {}
        self._errors: dict[str, list[str]] = {}

    def add(self, source: str, entry: ManifestEntry) -> None:
        self._images[source] = entry

    def add_error(self, source: str, message: str) -> None:
        self._errors.setdefault(source, []).append(message)

    def build(self, generated: Optional[str] = None) -> Manifest:
        return Manifest(
            generated=generated or now_utc_iso(),
            images={k: self._images[k] for k in sorted(self._images)},
            errors={k: self._errors[k] for k in sorted(self._errors)} or None,
        )


def write_manifest(manifest: Manifest, path: Path) -> Path:
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(manifest.to_json() + "\n", encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        raise ManifestWriteError(f"Failed to write manifest {path}: {e}") from e
    finally:
        if tmp.exists():
            tmp.unlink()
    return path
