"""Tests for ``deployer run``."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from deployer.cli.app import app

runner = CliRunner()

_ENV = ("CONFIG_FILE", "BROKER_URL", "QUEUE", "DEBUG", "CONFIG_WATCH", "MAX_WORKERS", "MAX_PENDING")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in _ENV:
        monkeypatch.delenv(f"DEPLOYER_{name}", raising=False)


def _service(code: int = 0) -> MagicMock:
    service = MagicMock()
    service.run = AsyncMock(return_value=code)
    return service


class TestRunCommand:
    @patch("deployer.service.DeployerService")
    def test_options_become_settings(self, mock_cls):
        mock_cls.return_value = _service()

        result = runner.invoke(app, [
            "run",
            "--config-file", "/etc/deployer.yml",
            "--broker-url", "redis://r:6379/0",
            "--queue", "deploys",
            "--watch",
            "--workers", "2",
            "--max-pending", "8",
        ])

        assert result.exit_code == 0, result.output
        settings = mock_cls.call_args.args[0]
        assert str(settings.config_file) == "/etc/deployer.yml"
        assert settings.broker_url == "redis://r:6379/0"
        assert settings.queue == "deploys"
        assert settings.config_watch is True
        assert settings.debug is False
        assert settings.max_workers == 2
        assert settings.max_pending == 8
        mock_cls.return_value.run.assert_awaited_once()

    @patch("deployer.service.DeployerService")
    def test_environment_fallback(self, mock_cls, monkeypatch):
        monkeypatch.setenv("DEPLOYER_CONFIG_FILE", "/srv/d.yml")
        monkeypatch.setenv("DEPLOYER_BROKER_URL", "redis://env")
        monkeypatch.setenv("DEPLOYER_QUEUE", "q")
        monkeypatch.setenv("DEPLOYER_CONFIG_WATCH", "true")
        mock_cls.return_value = _service()

        result = runner.invoke(app, ["run"])

        assert result.exit_code == 0, result.output
        settings = mock_cls.call_args.args[0]
        assert settings.queue == "q"
        assert settings.config_watch is True

    @patch("deployer.service.DeployerService")
    def test_exit_code_from_service(self, mock_cls):
        mock_cls.return_value = _service(code=1)
        result = runner.invoke(app, ["run", "-c", "/x.yml", "--broker-url", "redis://r", "-q", "q"])
        assert result.exit_code == 1

    @patch("deployer.service.DeployerService")
    def test_missing_settings(self, mock_cls):
        result = runner.invoke(app, ["run", "--queue", "q"])
        assert result.exit_code == 1
        assert "DEPLOYER_CONFIG_FILE" in result.output
        mock_cls.assert_not_called()
