"""
Configuration store: the tag -> pipeline mapping with atomic hot reload.

Manifesto:
    In-flight deploys must never observe half of a new configuration. The
    store therefore publishes whole, immutable snapshots: a reload parses
    the file into a fresh snapshot and swaps one reference. Readers never
    lock; a failed reload leaves the previous snapshot in place.

Architecture:
    ::

        reload(path) ──► load_snapshot(path) ──► ConfigurationSnapshot
                │                                   (immutable)
                │  success: self._snapshot = new    (single assignment)
                │  failure: log + raise ConfigError, keep old
                ▼
        current() ──► self._snapshot  (NOT_LOADED before first success)

    Writers (startup load, file watcher, manual reload) are serialized by a
    lock so two reloads cannot publish out of order. Readers take no lock.

Tags:
    deployer, configuration, hot-reload, snapshot
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType

import yaml
from pydantic import ValidationError

from deployer.config.models import DeployablePipeline, DeployerConfigSpec
from deployer.core.errors import ConfigError
from deployer.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """One successful parse of the pipeline definition file."""

    pipelines: Mapping[str, DeployablePipeline] = field(
        default_factory=lambda: MappingProxyType({})
    )
    source: Path | None = None
    loaded_at: datetime | None = None
    digest: str = ""

    @property
    def is_loaded(self) -> bool:
        return self.source is not None

    def get(self, tag: str) -> DeployablePipeline | None:
        return self.pipelines.get(tag)

    @property
    def tags(self) -> list[str]:
        return sorted(self.pipelines)

    def __contains__(self, tag: object) -> bool:
        return tag in self.pipelines

    def __iter__(self) -> Iterator[DeployablePipeline]:
        return iter(self.pipelines.values())

    def __len__(self) -> int:
        return len(self.pipelines)


NOT_LOADED = ConfigurationSnapshot()


def parse_snapshot(raw: bytes, source: Path) -> ConfigurationSnapshot:
    """Build a snapshot from the raw bytes of a pipeline definition file.

    Duplicate tags are allowed; the entry declared last wins.

    Raises:
        ConfigError: the document is not valid YAML or does not match the schema.
    """
    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {source}: {exc}", cause=exc).with_context(
            path=str(source)
        ) from exc

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ConfigError(
            f"{source}: top level must be a mapping, got {type(document).__name__}"
        ).with_context(path=str(source))

    try:
        spec = DeployerConfigSpec.model_validate(document)
    except ValidationError as exc:
        raise ConfigError(f"invalid pipeline definition in {source}: {exc}", cause=exc).with_context(
            path=str(source)
        ) from exc

    pipelines: dict[str, DeployablePipeline] = {}
    for deployable in spec.deployables:
        if deployable.tag in pipelines:
            logger.warning("duplicate_deployable_tag", tag=deployable.tag, path=str(source))
        pipelines[deployable.tag] = deployable.to_pipeline()

    return ConfigurationSnapshot(
        pipelines=MappingProxyType(pipelines),
        source=source,
        loaded_at=datetime.now(UTC),
        digest=hashlib.sha256(raw).hexdigest(),
    )


def load_snapshot(path: str | Path) -> ConfigurationSnapshot:
    """Read and parse a pipeline definition file.

    Raises:
        ConfigError: the file cannot be read or parsed.
    """
    source = Path(path)
    try:
        raw = source.read_bytes()
    except OSError as exc:
        raise ConfigError(f"cannot read {source}: {exc}", cause=exc).with_context(
            path=str(source)
        ) from exc
    return parse_snapshot(raw, source)


class ConfigurationStore:
    """Holds the currently published :class:`ConfigurationSnapshot`.

    Example::

        store = ConfigurationStore("/etc/deployer/pipelines.yml")
        store.load()                      # raises ConfigError if unusable
        pipeline = store.current().get("web")
        store.reload()                    # keeps old snapshot on failure
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._snapshot: ConfigurationSnapshot = NOT_LOADED
        self._write_lock = threading.Lock()
        self._reload_count = 0

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def reload_count(self) -> int:
        """Number of snapshots published so far."""
        return self._reload_count

    def current(self) -> ConfigurationSnapshot:
        """Latest published snapshot, or ``NOT_LOADED``. Never blocks."""
        return self._snapshot

    def load(self, path: str | Path | None = None) -> ConfigurationSnapshot:
        """Parse *path* (default: the store's path) and publish the result.

        Raises:
            ConfigError: nothing was published.
        """
        source = self._resolve_path(path)
        started = time.perf_counter()
        with self._write_lock:
            snapshot = load_snapshot(source)
            self._snapshot = snapshot
            self._path = source
            self._reload_count += 1

        logger.info(
            "configuration_loaded",
            path=str(source),
            deployables=len(snapshot),
            digest=snapshot.digest[:12],
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return snapshot

    def reload(self, path: str | Path | None = None) -> ConfigurationSnapshot:
        """Reload the configuration, keeping the current snapshot on failure.

        Raises:
            ConfigError: after logging ``config_reload_failed``; the
                previously published snapshot is still current.
        """
        try:
            return self.load(path)
        except ConfigError as exc:
            logger.warning("config_reload_failed", **exc.to_dict())
            raise

    def _resolve_path(self, path: str | Path | None) -> Path:
        if path is not None:
            return Path(path)
        if self._path is None:
            raise ConfigError("no configuration file path given")
        return self._path
