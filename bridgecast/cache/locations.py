"""Storage locations and the providers that discover them.

A write from one process may only be visible under a location the other
process does not probe by default, so the store works with an ordered list of
candidate locations.  Discovery is environment-specific and lives here, in
providers configured by ``storage_locations.yaml``; the store itself only
consumes the resolved list.

Available providers:
    StaticLocationProvider — a fixed directory
    EnvLocationProvider    — a directory named by an environment variable
    GlobLocationProvider   — every directory matching a glob pattern
"""

from __future__ import annotations

import glob
import logging
import os
import plistlib
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from bridgecast.cache.location_config import LocationsConfig, LocationSpec

logger = logging.getLogger("bridgecast.cache.locations")

CONTAINER_METADATA_PLIST = ".com.apple.mobile_container_manager.metadata.plist"


@dataclass(frozen=True)
class StorageLocation:
    """One candidate place the cache document may be written or found.

    Attributes:
        name:     Provider label, for logs.
        root:     Directory holding the document.
        filename: Cache document file name.
    """

    name: str
    root: Path
    filename: str = "weatherCache.json"

    @property
    def path(self) -> Path:
        return self.root / self.filename

    def __str__(self) -> str:
        return f"{self.name}:{self.path}"


class LocationProvider(ABC):
    """Resolve zero or more storage roots."""

    KIND: str = ""

    def __init__(self, name: str, subdir: str | None = None) -> None:
        self.name = name
        self.subdir = subdir

    @abstractmethod
    def roots(self) -> list[Path]:
        """Return candidate root directories, before ``subdir`` is applied."""

    def resolve(self, filename: str) -> list[StorageLocation]:
        locations = []
        for root in self.roots():
            if self.subdir:
                root = root / self.subdir
            locations.append(StorageLocation(name=self.name, root=root, filename=filename))
        return locations


class StaticLocationProvider(LocationProvider):
    KIND = "static"

    def __init__(self, name: str, path: str | Path, subdir: str | None = None) -> None:
        super().__init__(name, subdir)
        self.path = Path(path).expanduser()

    def roots(self) -> list[Path]:
        return [self.path]


class EnvLocationProvider(LocationProvider):
    """Directory named by an environment variable; resolves to nothing when unset."""

    KIND = "env"

    def __init__(self, name: str, env: str, subdir: str | None = None) -> None:
        super().__init__(name, subdir)
        self.env = env

    def roots(self) -> list[Path]:
        value = os.environ.get(self.env, "").strip()
        if not value:
            logger.debug("Location %s: $%s not set, skipping", self.name, self.env)
            return []
        return [Path(value).expanduser()]


class GlobLocationProvider(LocationProvider):
    """Every directory matching ``pattern``, in sorted order.

    With ``plist_identifier`` set, a directory is kept only if its container
    metadata plist has an ``MCMMetadataIdentifier`` containing that string.
    """

    KIND = "glob"

    def __init__(
        self,
        name: str,
        pattern: str,
        subdir: str | None = None,
        plist_identifier: str | None = None,
    ) -> None:
        super().__init__(name, subdir)
        self.pattern = os.path.expanduser(pattern)
        self.plist_identifier = plist_identifier

    def roots(self) -> list[Path]:
        matches = [Path(p) for p in sorted(glob.glob(self.pattern)) if os.path.isdir(p)]
        if self.plist_identifier:
            matches = [p for p in matches if self._identifier_matches(p)]
        logger.debug("Location %s: %d match(es) for %s", self.name, len(matches), self.pattern)
        return matches

    def _identifier_matches(self, root: Path) -> bool:
        metadata = root / CONTAINER_METADATA_PLIST
        try:
            with metadata.open("rb") as fh:
                plist = plistlib.load(fh)
        except FileNotFoundError:
            return False
        except (OSError, plistlib.InvalidFileException, ValueError) as exc:
            logger.debug("Unreadable container metadata at %s: %s", metadata, exc)
            return False
        identifier = plist.get("MCMMetadataIdentifier") if isinstance(plist, dict) else None
        return isinstance(identifier, str) and self.plist_identifier in identifier


# Registry: kind → provider class
PROVIDER_REGISTRY: dict[str, type[LocationProvider]] = {
    "static": StaticLocationProvider,
    "env": EnvLocationProvider,
    "glob": GlobLocationProvider,
}


def build_provider(spec: LocationSpec) -> LocationProvider:
    """Instantiate the provider for a validated config entry.

    Raises:
        KeyError: If the spec's kind is not registered.
    """
    if spec.kind not in PROVIDER_REGISTRY:
        raise KeyError(
            f"No location provider registered for kind '{spec.kind}'. "
            f"Available: {list(PROVIDER_REGISTRY)}"
        )
    if spec.kind == "static":
        return StaticLocationProvider(spec.name, spec.path or "", subdir=spec.subdir)
    if spec.kind == "env":
        return EnvLocationProvider(spec.name, spec.env or "", subdir=spec.subdir)
    return GlobLocationProvider(
        spec.name,
        spec.pattern or "",
        subdir=spec.subdir,
        plist_identifier=spec.plist_identifier,
    )


class LocationResolver:
    """Resolve an ordered provider list once and memoize the result.

    Duplicate paths (two providers pointing at the same directory) keep only
    their first, highest-priority occurrence.
    """

    def __init__(
        self,
        providers: list[LocationProvider],
        filename: str = "weatherCache.json",
        log: logging.Logger | None = None,
    ) -> None:
        self._providers = list(providers)
        self._filename = filename
        self._log = log or logger
        self._resolved: list[StorageLocation] | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: LocationsConfig, log: logging.Logger | None = None) -> "LocationResolver":
        providers = [build_provider(spec) for spec in config.locations]
        return cls(providers, filename=config.cache_filename, log=log)

    def resolve(self) -> list[StorageLocation]:
        """Return the resolved locations, computing them on first call."""
        if self._resolved is None:
            with self._lock:
                if self._resolved is None:
                    self._resolved = self._discover()
        return list(self._resolved)

    def invalidate(self) -> None:
        """Forget the memoized list; the next ``resolve()`` rediscovers."""
        with self._lock:
            self._resolved = None

    def _discover(self) -> list[StorageLocation]:
        locations: list[StorageLocation] = []
        seen: set[Path] = set()
        for provider in self._providers:
            for location in provider.resolve(self._filename):
                key = location.path.resolve()
                if key in seen:
                    continue
                seen.add(key)
                locations.append(location)

        self._log.info("Found %d potential storage location(s)", len(locations))
        for location in locations:
            self._log.debug("  %s", location)
        return locations
