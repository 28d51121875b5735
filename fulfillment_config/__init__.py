"""
fulfillment_config -- single public entrypoint for engine settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_settings()``.  No other component reads configuration
    files or environment variables.  Services receive the returned
    ``EngineSettings`` by injection.

Architecture position:
    Configuration -- sits above ``fulfillment_kernel`` and
    ``fulfillment_engines`` and below ``fulfillment_services``.  The kernel
    MUST NEVER import from ``fulfillment_config``.

Failure modes:
    - ``FileNotFoundError`` -- the settings file does not exist.
    - ``yaml.YAMLError`` -- malformed YAML.
    - ``ValueError`` -- unknown keys or invalid values.

Audit relevance:
    Every successful call emits ``fulfillment_config_loaded`` with the
    config id, version and a SHA-256 checksum of the resolved settings,
    tying every allocation run to the settings that governed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fulfillment_config.loader import compute_checksum, load_yaml_file, parse_settings
from fulfillment_config.settings import (
    AllocationSettings,
    EngineSettings,
    FulfillmentSettings,
    LockingSettings,
    ReviewSettings,
)

_logger = logging.getLogger("fulfillment_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_settings(config_path: Path | str | None = None) -> EngineSettings:
    """
    Load, validate and return the active engine settings.

    Args:
        config_path: Override path to a settings YAML file.  Defaults to
            fulfillment_config/sets/default.yaml.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH
    raw = load_yaml_file(path)
    settings = parse_settings(raw)

    _logger.info(
        "fulfillment_config_loaded",
        extra={
            "config_id": raw.get("config_id", path.stem),
            "config_version": raw.get("version"),
            "config_path": str(path),
            "checksum": compute_checksum(settings.to_dict()),
        },
    )
    return settings


__all__ = [
    "AllocationSettings",
    "EngineSettings",
    "FulfillmentSettings",
    "LockingSettings",
    "ReviewSettings",
    "get_active_settings",
]
