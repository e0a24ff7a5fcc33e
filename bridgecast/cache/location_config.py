"""Load, validate, and reload the storage location configuration.

The ordered list of location providers lives in ``storage_locations.yaml``
alongside this module (override with ``BRIDGECAST_LOCATIONS_CONFIG``).  It is
loaded once and cached.  Call ``reload_locations_config()`` to re-read it.

Usage::

    from bridgecast.cache.location_config import get_locations_config

    config = get_locations_config()
    config.cache_filename                 # "weatherCache.json"
    [spec.name for spec in config.locations]
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("bridgecast.cache.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "storage_locations.yaml"

_KNOWN_KINDS = ("static", "env", "glob")


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class LocationSpec:
    """One configured location provider.

    Attributes:
        name:             Label used in logs.
        kind:             Provider kind: 'static', 'env' or 'glob'.
        path:             Directory for 'static'.
        env:              Environment variable naming a directory, for 'env'.
        pattern:          Glob pattern of candidate roots, for 'glob'.
        plist_identifier: For 'glob', keep only roots whose container metadata
                          plist identifier contains this string.
        subdir:           Optional sub-directory appended to every root.
    """

    name: str
    kind: str
    path: str | None = None
    env: str | None = None
    pattern: str | None = None
    plist_identifier: str | None = None
    subdir: str | None = None


@dataclass
class LocationsConfig:
    """Complete, validated storage location configuration.

    Attributes:
        version:        Config schema version string.
        cache_filename: File name of the cache document under each root.
        locations:      Provider specs in read-priority order.
    """

    version: str
    cache_filename: str
    locations: list[LocationSpec] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when storage_locations.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Storage locations config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> LocationsConfig:
    """Validate the raw YAML dict and construct a LocationsConfig.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))
    cache_filename = raw.get("cache_filename", "weatherCache.json")
    if not isinstance(cache_filename, str) or not cache_filename.strip():
        errors.append("'cache_filename' must be a non-empty string")
    elif "/" in cache_filename or "\\" in cache_filename:
        errors.append(f"'cache_filename' must be a bare file name, got {cache_filename!r}")

    locations_raw: Any = raw.get("locations")
    if not locations_raw:
        errors.append("'locations' section is missing or empty")
        locations_raw = []
    elif not isinstance(locations_raw, list):
        errors.append("'locations' must be a list")
        locations_raw = []

    specs: list[LocationSpec] = []
    seen_names: set[str] = set()
    for i, item in enumerate(locations_raw):
        if not isinstance(item, dict):
            errors.append(f"locations[{i}] must be a mapping")
            continue

        name = item.get("name") or f"location_{i}"
        if name in seen_names:
            errors.append(f"locations[{i}]: duplicate name '{name}'")
        seen_names.add(name)

        kind = item.get("kind")
        if kind not in _KNOWN_KINDS:
            errors.append(
                f"locations.{name}.kind must be one of {list(_KNOWN_KINDS)}, got {kind!r}"
            )
            continue

        required = {"static": "path", "env": "env", "glob": "pattern"}[kind]
        if not item.get(required):
            errors.append(f"Missing required key '{required}' in locations.{name}")
            continue

        specs.append(
            LocationSpec(
                name=name,
                kind=kind,
                path=item.get("path"),
                env=item.get("env"),
                pattern=item.get("pattern"),
                plist_identifier=item.get("plist_identifier"),
                subdir=item.get("subdir"),
            )
        )

    if errors:
        raise ConfigValidationError(
            f"storage_locations.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return LocationsConfig(version=version, cache_filename=cache_filename, locations=specs)


def load_locations_config(path: Path | None = None) -> LocationsConfig:
    """Load and validate the location config from disk.

    Args:
        path: Override path to YAML. Uses the bundled storage_locations.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info(
        "Loaded storage locations config v%s from %s (%d providers)",
        config.version, target, len(config.locations),
    )
    return config


# ---------------------------------------------------------------------------
# Global singleton with reload support
# ---------------------------------------------------------------------------

_config: LocationsConfig | None = None
_config_lock = threading.Lock()


def get_locations_config() -> LocationsConfig:
    """Return the global LocationsConfig, loading it on first call.

    Honors ``Settings.locations_config`` when set.  Thread-safe.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                from bridgecast.config import get_settings

                _config = load_locations_config(get_settings().locations_config)
    return _config


def reload_locations_config(path: Path | None = None) -> LocationsConfig:
    """Reload the location config and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.
    Stores that already resolved their locations keep the old list.
    """
    global _config
    new_config = load_locations_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded storage locations config: %s → %s", old_version, new_config.version)
    return new_config
