from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml

YAML_SUFFIXES = (".yaml", ".yml")


def read_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    data = yaml.safe_load(p.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML root must be a mapping: {p}")
    return data


def read_toml(path: str | Path) -> dict[str, Any]:
    return tomllib.loads(Path(path).read_text(encoding="utf-8"))


def read_mapping(path: str | Path) -> dict[str, Any]:
    """Read a config mapping, choosing the parser from the file suffix."""
    p = Path(path)
    if p.suffix.lower() in YAML_SUFFIXES:
        return read_yaml(p)
    return read_toml(p)
