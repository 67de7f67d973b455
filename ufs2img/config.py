"""
config.py

Optional configuration file (YAML or JSON) holding defaults for the command
line. Command-line flags always win over values from the file.

Example (config.yaml):

    makefs: /usr/local/bin/makefs
    output_dir: /output
    mount_point: /archive
    mount_timeout: 120
    fuse_device: /dev/fuse

The file path comes from --config, or from the UFS2IMG_CONFIG environment
variable when --config is not given.
"""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ufs2img.archive_mount import DEFAULT_FUSE_DEVICE, DEFAULT_MOUNT_TIMEOUT
from ufs2img.errors import ConfigError

CONFIG_ENV_VAR = "UFS2IMG_CONFIG"


@dataclass
class Config:
    makefs: Optional[str] = None
    output_dir: str = "."
    mount_point: Optional[str] = None
    mount_timeout: float = DEFAULT_MOUNT_TIMEOUT
    fuse_device: str = DEFAULT_FUSE_DEVICE


def _load_mapping(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    suffix = path.suffix.lower()
    if suffix not in {".yaml", ".yml", ".json"}:
        raise ConfigError(f"Config file must be .yaml, .yml or .json: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid UTF-8: {e}") from e

    if suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    else:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return data


def is_valid_timeout(value: float) -> bool:
    return math.isfinite(value) and value > 0


def load_config(path: Union[str, Path, None]) -> Config:
    """Load a config file; None returns the built-in defaults."""
    if path is None:
        return Config()

    path = Path(path)
    data = _load_mapping(path)

    known = {f.name for f in fields(Config)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {path}: {', '.join(unknown)}")

    cfg = Config()
    for key in ("makefs", "output_dir", "mount_point", "fuse_device"):
        if key in data:
            value = data[key]
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"{key} must be a string in {path}")
            if value is None and key in ("output_dir", "fuse_device"):
                raise ConfigError(f"{key} cannot be empty in {path}")
            setattr(cfg, key, value)

    if "mount_timeout" in data:
        value = data["mount_timeout"]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not is_valid_timeout(value):
            raise ConfigError(f"mount_timeout must be a positive number in {path}")
        cfg.mount_timeout = float(value)

    return cfg


def default_config_path() -> Optional[str]:
    return os.environ.get(CONFIG_ENV_VAR) or None
