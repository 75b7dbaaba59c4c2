"""Tests for deployer.config.watcher."""

from __future__ import annotations

import asyncio

import pytest
from watchfiles import Change

from deployer.config.store import ConfigurationStore
from deployer.config.watcher import ConfigWatcher
from deployer.core.errors import ConfigError


class TestFilter:
    def test_matches_only_target_file(self, sample_config):
        watcher = ConfigWatcher(ConfigurationStore(sample_config))
        assert watcher._is_target(Change.modified, str(sample_config))
        assert watcher._is_target(Change.added, str(sample_config))
        assert not watcher._is_target(Change.modified, str(sample_config.with_name("other.yml")))

    def test_deletion_ignored(self, sample_config):
        watcher = ConfigWatcher(ConfigurationStore(sample_config))
        assert not watcher._is_target(Change.deleted, str(sample_config))

    def test_needs_a_path(self):
        with pytest.raises(ConfigError):
            ConfigWatcher(ConfigurationStore())


class TestHandleChange:
    def test_successful_reload(self, sample_config):
        store = ConfigurationStore(sample_config)
        store.load()
        sample_config.write_text("deployables: [{tag: api}]")

        assert ConfigWatcher(store).handle_change() is True
        assert store.current().tags == ["api"]

    def test_rejected_reload_keeps_snapshot(self, sample_config):
        store = ConfigurationStore(sample_config)
        before = store.load()
        sample_config.write_text("deployables: [")

        assert ConfigWatcher(store).handle_change() is False
        assert store.current() is before


class TestLifecycle:
    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_reloads_on_file_write(self, sample_config):
        store = ConfigurationStore(sample_config)
        store.load()
        watcher = ConfigWatcher(store, debounce_ms=50)
        watcher.start()
        try:
            await asyncio.sleep(0.3)
            sample_config.write_text("deployables: [{tag: api}]")
            for _ in range(100):
                if store.current().tags == ["api"]:
                    break
                await asyncio.sleep(0.05)
        finally:
            await watcher.stop()

        assert store.current().tags == ["api"]

    @pytest.mark.asyncio
    async def test_stop_without_start(self, sample_config):
        watcher = ConfigWatcher(ConfigurationStore(sample_config))
        await watcher.stop()
