"""Config file watcher: reloads the store when the pipeline file changes.

The parent directory is watched rather than the file itself so that editors
and config managers that replace the file (write temp + rename) are still
seen. Deletions are ignored; the last good snapshot stays active until a
new file appears.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from watchfiles import Change, awatch

from deployer.config.store import ConfigurationStore
from deployer.core.errors import ConfigError
from deployer.core.logging import get_logger

logger = get_logger(__name__)


class ConfigWatcher:
    """Runs ``store.reload()`` whenever the watched file is added or modified."""

    def __init__(
        self,
        store: ConfigurationStore,
        path: str | Path | None = None,
        *,
        debounce_ms: int = 200,
    ) -> None:
        target = Path(path) if path is not None else store.path
        if target is None:
            raise ConfigError("config watcher needs a file path")
        self._store = store
        self._path = target.resolve()
        self._debounce_ms = debounce_ms
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _is_target(self, change: Change, changed_path: str) -> bool:
        if change == Change.deleted:
            return False
        return Path(changed_path).name == self._path.name

    def start(self) -> asyncio.Task:
        """Start watching in a background task on the running loop."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="config-watcher")
        return self._task

    async def run(self) -> None:
        logger.debug("config_watcher_started", path=str(self._path))
        try:
            async for changes in awatch(
                self._path.parent,
                watch_filter=self._is_target,
                debounce=self._debounce_ms,
                stop_event=self._stop,
                recursive=False,
            ):
                logger.debug(
                    "config_file_changed",
                    path=str(self._path),
                    events=sorted(change.name for change, _ in changes),
                )
                self.handle_change()
        finally:
            logger.debug("config_watcher_exited", path=str(self._path))

    def handle_change(self) -> bool:
        """Reload the store; returns False when the new file was rejected."""
        try:
            self._store.reload(self._path)
        except ConfigError:
            # Already logged by the store; the previous snapshot stays live.
            return False
        return True

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await self._task
            finally:
                self._task = None
