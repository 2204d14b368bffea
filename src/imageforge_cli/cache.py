from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .discovery import SourceDescriptor
    from .schema import ProcessOptions, SourceIdentity

FINGERPRINT_SCHEMA = 1


def stable_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass(frozen=True)
class ContentHash:
    algo: str
    value: str

    def __str__(self) -> str:
        return f"{self.algo}:{self.value}"


def source_identity(path: Path, mode: SourceIdentity = "content") -> ContentHash:
    """Identity of a source file's content.

    ``content`` hashes every byte. ``stat`` trusts size and mtime, which is
    faster but misses edits that preserve both.
    """
    if mode == "stat":
        st = path.stat()
        return ContentHash("stat", sha256_text(f"{st.st_size}:{st.st_mtime_ns}"))
    return ContentHash("sha256", file_sha256(path))


def options_payload(options: ProcessOptions) -> dict[str, Any]:
    return {
        "formats": sorted(options.formats),
        "quality": options.quality,
        "blur": options.blur,
        # blur_size has no effect on output bytes when blur is off
        "blur_size": options.blur_size if options.blur else None,
        "widths": list(options.widths) if options.widths else None,
    }


def compute_fingerprint(
    source: SourceDescriptor,
    options: ProcessOptions,
    output_root: str,
) -> str:
    payload = {
        "schema": FINGERPRINT_SCHEMA,
        "source": source.relative_path,
        "identity": str(source.identity),
        "output_root": output_root,
        "options": options_payload(options),
    }
    return sha256_text(stable_json(payload))
