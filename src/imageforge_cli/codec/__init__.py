from __future__ import annotations

from .base import Codec, EncodeRequest
from .pillow import PillowCodec

__all__ = [
    "Codec",
    "EncodeRequest",
    "PillowCodec",
]
