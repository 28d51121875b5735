"""
Configuration Loader (``fulfillment_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into ``EngineSettings``.  Callers
use ``fulfillment_config.get_active_settings()``; this module is the
parsing half of it.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values or unknown keys  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from fulfillment_config.settings import EngineSettings


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    return data


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """Parse the ``settings`` document (or a bare section mapping)."""
    body = data.get("settings", data)
    if not isinstance(body, dict):
        raise ValueError("'settings' must be a mapping")
    return EngineSettings.from_dict(dict(body))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
