from __future__ import annotations

from typing import Optional


class ImageForgeError(Exception):
    code = "IMAGEFORGE_ERROR"


class InputValidationError(ImageForgeError):
    code = "INVALID_INPUT"


class CollisionError(ImageForgeError):
    code = "PREFLIGHT_COLLISION"

    def __init__(self, first: tuple[str, str], second: tuple[str, str]):
        self.first = first
        self.second = second
        super().__init__(
            "Output collision detected: "
            f"{first[0]} -> {first[1]} and {second[0]} -> {second[1]}"
        )

    @property
    def details(self) -> list[str]:
        return [
            f"{self.first[0]} -> {self.first[1]}",
            f"{self.second[0]} -> {self.second[1]}",
            "Fix: rename one source file or change --out-dir.",
        ]


class OwnershipConflictError(ImageForgeError):
    code = "OWNERSHIP_CONFLICT"

    def __init__(self, path: str, source: str, owner: Optional[str] = None):
        self.path = path
        self.source = source
        self.owner = owner
        if owner is None:
            message = f"Output path already exists and is not tracked as an imageforge output: {path}"
        else:
            message = f"Output path already exists and is owned by a different source ({owner}): {path}"
        super().__init__(message)


class CodecError(ImageForgeError):
    code = "PROCESS_IMAGE_FAILED"


class MetadataError(ImageForgeError):
    code = "METADATA_FAILED"


class CacheStoreError(ImageForgeError):
    code = "CACHE_STORE_FAILED"


class CacheLockError(ImageForgeError):
    code = "CACHE_LOCK_FAILED"


class ManifestWriteError(ImageForgeError):
    code = "MANIFEST_WRITE_FAILED"
