from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class EncodeRequest:
    format: str
    quality: int
    width: int
    height: int


class Codec(ABC):
    @abstractmethod
    def encode(self, source: Path, req: EncodeRequest) -> bytes:
        """Decode ``source``, apply its orientation, resize to exactly
        ``req.width`` x ``req.height`` and encode as ``req.format``."""
        raise NotImplementedError

    @abstractmethod
    def blur_placeholder(self, source: Path, size: int) -> str:
        """Return a data URL for a tiny preview bounded by ``size`` pixels."""
        raise NotImplementedError
