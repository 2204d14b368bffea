from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InputValidationError
from .io import read_mapping
from .responsive import validate_widths
from .schema import CacheMode, OutputFormat, SourceIdentity

CONFIG_NAMES = ("imageforge.toml", "imageforge.yaml", "imageforge.yml")


class ImageForgeConfig(BaseModel):
    """Project defaults; every key is optional and CLI flags win."""

    model_config = ConfigDict(extra="forbid")

    output: Optional[str] = None
    formats: Optional[list[OutputFormat]] = Field(default=None, min_length=1)
    quality: Optional[int] = Field(default=None, ge=1, le=100)
    blur: Optional[bool] = None
    blur_size: Optional[int] = Field(default=None, ge=1, le=256)
    widths: Optional[list[int]] = None
    cache: Optional[CacheMode] = None
    force_overwrite: Optional[bool] = None
    out_dir: Optional[str] = None
    concurrency: Optional[int] = Field(default=None, ge=1)
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    source_identity: Optional[SourceIdentity] = None

    @field_validator("widths")
    @classmethod
    def validate_width_list(cls, v: Optional[list[int]]) -> Optional[list[int]]:
        if v is None:
            return v
        try:
            return validate_widths(v, source="widths")
        except InputValidationError as e:
            raise ValueError(str(e)) from e

    @field_validator("output", "out_dir")
    @classmethod
    def validate_non_empty(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("cannot be empty")
        return v


class ConfigError(Exception):
    def __init__(self, message: str, path: Optional[Path] = None, line: Optional[int] = None):
        self.path = path
        self.line = line
        if path:
            loc = f"{path}"
            if line:
                loc += f":{line}"
            message = f"{loc}: {message}"
        super().__init__(message)


def load_config(config_path: Path) -> ImageForgeConfig:
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}", path=config_path)

    try:
        data = read_mapping(config_path)
    except yaml.MarkedYAMLError as e:
        line = e.problem_mark.line + 1 if e.problem_mark is not None else None
        raise ConfigError(f"Failed to parse YAML: {e.problem}", path=config_path, line=line) from e
    except (tomllib.TOMLDecodeError, yaml.YAMLError, ValueError, OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to parse config: {e}", path=config_path) from e

    try:
        return ImageForgeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}", path=config_path) from e


def find_config(start_dir: Optional[Path] = None) -> Optional[Path]:
    if start_dir is None:
        start_dir = Path.cwd()

    current = start_dir.resolve()
    while True:
        for name in CONFIG_NAMES:
            candidate = current / name
            if candidate.is_file():
                return candidate
        if current == current.parent:
            return None
        current = current.parent
