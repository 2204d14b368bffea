from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

OutputFormat = Literal["webp", "avif"]
CacheMode = Literal["on", "read-only", "off"]
SourceIdentity = Literal["content", "stat"]

SUPPORTED_FORMATS: tuple[str, ...] = ("webp", "avif")
MANIFEST_VERSION = "1.0"


class ProcessOptions(BaseModel):
    """Normalized option set that affects output bytes or output paths."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    formats: tuple[OutputFormat, ...] = Field(min_length=1)
    quality: int = Field(default=80, ge=1, le=100)
    blur: bool = True
    blur_size: int = Field(default=4, ge=1, le=256)
    widths: Optional[tuple[int, ...]] = None

    @field_validator("widths")
    @classmethod
    def normalize_width_set(cls, v: Optional[tuple[int, ...]]) -> Optional[tuple[int, ...]]:
        if not v:
            return None
        return tuple(sorted(set(v)))

    @property
    def responsive(self) -> bool:
        return bool(self.widths)


class ManifestOutput(BaseModel):
    path: str
    size: int = Field(ge=0)


class ManifestVariant(BaseModel):
    width: int = Field(ge=1)
    height: int = Field(ge=0)
    path: str
    size: int = Field(ge=0)


class ManifestEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    width: int
    height: int
    aspect_ratio: float = Field(alias="aspectRatio")
    blur_data_url: str = Field(default="", alias="blurDataURL")
    original_size: int = Field(alias="originalSize", ge=0)
    outputs: dict[str, ManifestOutput]
    variants: Optional[dict[str, list[ManifestVariant]]] = None
    hash: str

    @model_validator(mode="after")
    def _primary_points_at_largest_variant(self):
        for fmt, variants in (self.variants or {}).items():
            widths = [v.width for v in variants]
            if widths != sorted(set(widths)):
                raise ValueError(f"variants.{fmt} must be strictly ascending by width")
            output = self.outputs.get(fmt)
            if variants and (output is None or output.path != variants[-1].path):
                raise ValueError(f"outputs.{fmt} must point at the largest variant")
        return self

    def output_paths(self) -> list[str]:
        paths = {o.path: None for o in self.outputs.values()}
        for variants in (self.variants or {}).values():
            for v in variants:
                paths[v.path] = None
        return list(paths)

    def processed_size(self) -> int:
        sizes = {o.path: o.size for o in self.outputs.values()}
        for variants in (self.variants or {}).values():
            for v in variants:
                sizes[v.path] = v.size
        return sum(sizes.values())


class Manifest(BaseModel):
    version: str = MANIFEST_VERSION
    generated: str
    images: dict[str, ManifestEntry] = Field(default_factory=dict)
    errors: Optional[dict[str, list[str]]] = None

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def to_json(self, indent: int = 2) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=indent)
