"""
Deployer daemon: wires the store, watcher, broker, pool and dispatcher.

Lifecycle::

    configure logging
    load configuration          ── ConfigError  ─► exit 1
    start watcher (optional)
    connect broker              ── BrokerError  ─► exit 1
    start pool
    install SIGINT / SIGTERM    ─► dispatcher.stop()
    dispatcher.run()            ── BROKER_ERROR ─► exit 1 (after drain)
    pool.shutdown(timeout)      (join barrier for running pipelines)
    stop watcher

Tags:
    deployer, service, lifecycle, signals
"""

from __future__ import annotations

import asyncio
import signal

from deployer.config.store import ConfigurationStore
from deployer.config.watcher import ConfigWatcher
from deployer.core.errors import BrokerError, ConfigError
from deployer.core.logging import configure_logging, get_logger
from deployer.core.settings import DeployerSettings
from deployer.execution.executor import ActionExecutor
from deployer.execution.pool import PipelinePool
from deployer.messaging.broker import Broker, RedisBroker
from deployer.messaging.dispatcher import Dispatcher, StopReason

logger = get_logger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class DeployerService:
    """One deployer process.

    Args:
        settings: Process settings.
        broker: Broker to consume from; a :class:`RedisBroker` built from
            the settings when omitted.
        executor: Pipeline runner; a default :class:`ActionExecutor` when
            omitted.
    """

    def __init__(
        self,
        settings: DeployerSettings,
        *,
        broker: Broker | None = None,
        executor: ActionExecutor | None = None,
    ) -> None:
        self.settings = settings
        self.store = ConfigurationStore(settings.config_file)
        self.broker: Broker = broker or RedisBroker(
            settings.broker_url,
            settings.queue,
            receive_timeout=settings.receive_timeout,
        )
        self.pool = PipelinePool(
            executor or ActionExecutor(),
            max_workers=settings.max_workers,
            max_pending=settings.max_pending,
        )
        self.dispatcher = Dispatcher(self.store, self.broker, self.pool)
        self.watcher: ConfigWatcher | None = None

    async def run(self) -> int:
        """Run until a stop signal or a broker failure; returns the exit code."""
        configure_logging(level=self.settings.log_level, json_format=self.settings.json_logs)
        logger.info(
            "deployer_starting",
            config_file=str(self.settings.config_file),
            queue=self.settings.queue,
            max_workers=self.settings.max_workers,
            max_pending=self.settings.max_pending,
            config_watch=self.settings.config_watch,
        )

        try:
            self.store.load()
        except ConfigError as exc:
            logger.error("config_load_failed", **exc.to_dict())
            return 1

        if self.settings.config_watch:
            self.watcher = ConfigWatcher(self.store)
            self.watcher.start()

        try:
            await self.broker.connect()
        except BrokerError as exc:
            logger.error("broker_connect_failed", **exc.to_dict())
            await self._stop_watcher()
            await self.broker.close()
            return 1

        self.pool.start()
        installed = self._install_signal_handlers()
        try:
            reason = await self.dispatcher.run()
        finally:
            self._remove_signal_handlers(installed)
            await self.pool.shutdown(self.settings.shutdown_timeout)
            await self._stop_watcher()

        logger.info("deployer_stopped", reason=reason.value, **self.pool.stats().to_dict())
        return 0 if reason is StopReason.SHUTDOWN else 1

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in _STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # No signal support here (non-main thread or platform).
                logger.debug("signal_handler_unavailable", signal=sig.name)
                continue
            installed.append(sig)
        return installed

    def _remove_signal_handlers(self, installed: list[signal.Signals]) -> None:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("signal_received", signal=sig.name)
        self.dispatcher.stop()

    async def _stop_watcher(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
            self.watcher = None
