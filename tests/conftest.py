"""
Shared pytest fixtures for deployer tests.

This module provides:
- structlog reset between tests so ``structlog.testing.capture_logs`` works
- Pipeline file writers backed by ``tmp_path``
- Small builders for pipelines and deliveries
"""

from __future__ import annotations

import asyncio
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest
import structlog

from deployer.config.models import Action, DeployablePipeline
from deployer.messaging.broker import Delivery

SAMPLE_CONFIG = """
deployables:
  - tag: web
    required-data: [version]
    actions:
      - work-dir: /srv/web
        command: [git, checkout, "((data:version))"]
      - command: [systemctl, --user, restart, web]
  - tag: docs
    actions:
      - command: [make, html]
"""


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Loggers must stay uncached for capture_logs to see their events."""
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    """Write a pipeline file under ``tmp_path`` and return its path."""

    def _write(text: str, name: str = "deployer.yml") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(text))
        return path

    return _write


@pytest.fixture
def sample_config(write_config) -> Path:
    return write_config(SAMPLE_CONFIG)


def make_pipeline(tag: str = "web", *commands: list[str], required: tuple[str, ...] = ()) -> DeployablePipeline:
    return DeployablePipeline(
        tag=tag,
        required_data=frozenset(required),
        actions=tuple(Action(command=tuple(cmd)) for cmd in commands),
    )


def make_delivery(body: bytes | str, delivery_id: int = 1) -> Delivery:
    if isinstance(body, str):
        body = body.encode()
    return Delivery(body=body, delivery_id=delivery_id)


class FakeBroker:
    """In-memory broker: serves *deliveries* (exceptions in it are raised), then raises *error* or idles."""

    def __init__(self, deliveries=(), *, error: Exception | None = None, connect_error: Exception | None = None):
        self.deliveries = list(deliveries)
        self.error = error
        self.connect_error = connect_error
        self.connected = False
        self.close_calls = 0
        self.cancelled = False

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def receive(self) -> Delivery | None:
        if self.deliveries:
            item = self.deliveries.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.error is not None:
            raise self.error
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return None

    async def publish(self, body: bytes) -> None:
        self.deliveries.append(make_delivery(body, len(self.deliveries) + 1))

    @property
    def is_closed(self) -> bool:
        return self.close_calls > 0

    async def close(self) -> None:
        self.close_calls += 1
