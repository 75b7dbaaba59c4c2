"""Tests for deployer.core.logging."""

from __future__ import annotations

import json
import logging

import pytest
import structlog
from structlog.testing import LogCapture

from deployer.core.logging import LogContext, bind_context, configure_logging, get_logger, unbind_context


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestConfigureLogging:
    def test_json_output(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger("deployer.test").info("deploy_accepted", tag="web", delivery_id=3)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "deploy_accepted"
        assert record["tag"] == "web"
        assert record["delivery_id"] == 3
        assert record["level"] == "info"
        assert record["service"] == "deployer"
        assert record["logger"] == "deployer.test"
        assert "timestamp" in record

    def test_level_filter(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        log = get_logger("deployer.test")
        log.info("hidden")
        log.warning("shown")

        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "shown" in out

    def test_watchfiles_logger_quietened(self):
        configure_logging(level="DEBUG", json_format=True)
        assert logging.getLogger("watchfiles").level == logging.WARNING


class TestContext:
    def test_log_context_binds_and_restores(self):
        capture = LogCapture()
        structlog.configure(processors=[structlog.contextvars.merge_contextvars, capture])
        log = get_logger("deployer.test")
        with LogContext(tag="web", run_id="abc"):
            log.info("inside")
        log.info("outside")

        logs = capture.entries
        assert logs[0]["tag"] == "web"
        assert logs[0]["run_id"] == "abc"
        assert "tag" not in logs[1]

    def test_bind_and_unbind(self):
        bind_context(delivery_id=4, tag="web")
        assert structlog.contextvars.get_contextvars() == {"delivery_id": 4, "tag": "web"}
        unbind_context("delivery_id", "tag")
        assert structlog.contextvars.get_contextvars() == {}
