from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

import pytest
from PIL import Image

from imageforge_cli.cache import ContentHash
from imageforge_cli.codec import Codec, EncodeRequest
from imageforge_cli.discovery import SourceDescriptor
from imageforge_cli.errors import CodecError


class CountingCodec(Codec):
    """Records every request and returns deterministic fake bytes."""

    def __init__(self, fail_on: Optional[set[str]] = None):
        self.calls: list[tuple[str, EncodeRequest]] = []
        self.blur_calls = 0
        self.fail_on = fail_on or set()
        self._lock = threading.Lock()

    def encode(self, source: Path, req: EncodeRequest) -> bytes:
        with self._lock:
            self.calls.append((source.name, req))
        if source.name in self.fail_on:
            raise CodecError(f"{source.name}: simulated encoder failure")
        return f"{source.name}:{req.format}:{req.width}x{req.height}:{req.quality}".encode("utf-8")

    def blur_placeholder(self, source: Path, size: int) -> str:
        with self._lock:
            self.blur_calls += 1
        return f"data:image/png;base64,{size}"


def write_image(
    path: Path,
    size: tuple[int, int] = (400, 300),
    color: str = "red",
    orientation: Optional[int] = None,
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", size, color)
    fmt = "JPEG" if path.suffix.lower() in (".jpg", ".jpeg") else "PNG"
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        img.save(path, format=fmt, exif=exif)
    else:
        img.save(path, format=fmt)
    return path


def make_source(
    relative_path: str = "photo.jpg",
    width: int = 400,
    height: int = 300,
    orientation: Optional[int] = None,
    root: Path = Path("/input"),
    digest: str = "abc123",
    size: int = 1000,
) -> SourceDescriptor:
    return SourceDescriptor(
        path=root / relative_path,
        relative_path=relative_path,
        size=size,
        identity=ContentHash("sha256", digest),
        raw_width=width,
        raw_height=height,
        orientation=orientation,
    )


@pytest.fixture
def codec() -> CountingCodec:
    return CountingCodec()


@pytest.fixture
def input_dir(tmp_path: Path) -> Path:
    root = tmp_path / "images"
    write_image(root / "hero.jpg", (800, 600), "red")
    write_image(root / "nested" / "icon.png", (200, 100), "blue")
    return root
