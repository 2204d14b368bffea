from __future__ import annotations

import base64
from io import BytesIO
from pathlib import Path

from PIL import Image, ImageOps

from ..errors import CodecError
from .base import Codec, EncodeRequest

PIL_FORMATS = {
    "webp": "WEBP",
    "avif": "AVIF",
}


def _prepare(img: Image.Image) -> Image.Image:
    img = ImageOps.exif_transpose(img)
    if img.mode not in ("RGB", "RGBA"):
        has_alpha = "A" in img.getbands() or "transparency" in img.info
        img = img.convert("RGBA" if has_alpha else "RGB")
    return img


class PillowCodec(Codec):
    def __init__(self, webp_method: int = 4):
        self._webp_method = webp_method

    def encode(self, source: Path, req: EncodeRequest) -> bytes:
        pil_format = PIL_FORMATS.get(req.format)
        if pil_format is None:
            raise CodecError(f"Unsupported output format: {req.format}")

        save_kwargs: dict = {"quality": req.quality}
        if req.format == "webp":
            save_kwargs.update(method=self._webp_method, lossless=req.quality == 100)
        elif req.format == "avif" and req.quality == 100:
            # No lossless switch for AVIF; keep full chroma and range at top quality.
            save_kwargs.update(subsampling="4:4:4", range="full")

        buf = BytesIO()
        try:
            with Image.open(source) as raw:
                img = _prepare(raw)
                if img.size != (req.width, req.height):
                    img = img.resize((req.width, req.height), resample=Image.Resampling.LANCZOS)
                img.save(buf, format=pil_format, **save_kwargs)
        except (OSError, ValueError, KeyError, Image.DecompressionBombError) as e:
            raise CodecError(f"{source.name}: {req.format} encode failed: {e}") from e
        return buf.getvalue()

    def blur_placeholder(self, source: Path, size: int) -> str:
        buf = BytesIO()
        try:
            with Image.open(source) as raw:
                img = _prepare(raw)
                img.thumbnail((size, size), resample=Image.Resampling.LANCZOS)
                img.save(buf, format="PNG")
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise CodecError(f"{source.name}: blur placeholder failed: {e}") from e
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
