"""Tests for CLI commands"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml
from typer.testing import CliRunner

from cli.client.base import PortalAPIError
from cli.main import app
from cli.utils.config_manager import ConfigManager


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture
def cli_config(tmp_path, monkeypatch):
    """Point every CLI module at a throwaway config directory"""
    manager = ConfigManager(config_dir=tmp_path / "cli")
    for target in (
        "cli.main.config_manager",
        "cli.commands.config.config",
        "cli.commands.jobs.config",
        "cli.client.endpoints.config",
    ):
        monkeypatch.setattr(target, manager)
    return manager


def _client_mock(monkeypatch, target: str) -> MagicMock:
    client = MagicMock()
    client.__enter__.return_value = client
    client.__exit__.return_value = None
    monkeypatch.setattr(target, MagicMock(return_value=client))
    return client


HEALTHY = {
    "ok": True,
    "version": "1.0.0",
    "environment": "development",
    "database": {"connected": True, "response_time_ms": 1.2},
    "queue": {
        "queue_depth": 4,
        "pending_jobs": 3,
        "processing_jobs": 1,
        "failed_jobs": 0,
        "expired_leases": 0,
    },
}

JOB = {
    "id": 7,
    "install_id": 3,
    "job_type": "provision",
    "status": "failed",
    "attempts": 3,
    "max_attempts": 3,
    "last_error": "Rate limited",
    "next_run_at": "2026-01-01T12:00:00+00:00",
    "locked_until": None,
    "locked_by": None,
    "created_at": "2026-01-01T11:00:00+00:00",
    "started_at": "2026-01-01T11:00:01+00:00",
    "completed_at": "2026-01-01T11:30:00+00:00",
}


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "1.0.0" in result.stdout

    def test_status_success(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.main.PortalClient")
        client.health_check.return_value = HEALTHY

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "Connected" in result.stdout
        assert "Queue depth" in result.stdout

    def test_status_unhealthy(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.main.PortalClient")
        client.health_check.return_value = {
            **HEALTHY,
            "ok": False,
            "database": {"connected": False},
        }

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 1
        assert "down" in result.stdout

    def test_status_connection_error(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.main.PortalClient")
        client.health_check.side_effect = PortalAPIError("Connection refused")

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 1
        assert "Connection Failed" in result.stdout


class TestJobCommands:
    """Test job administration commands"""

    def test_list(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.commands.jobs.PortalClient")
        client.list_jobs.return_value = {"jobs": [JOB], "total": 1, "limit": 50, "offset": 0}

        result = runner.invoke(app, ["jobs", "list", "-s", "failed", "-s", "pending"])

        assert result.exit_code == 0
        assert "1 of 1" in result.stdout
        client.list_jobs.assert_called_once_with(
            status=["failed", "pending"],
            job_type=None,
            install_id=None,
            limit=50,
            offset=0,
        )

    def test_list_uses_configured_page_size(self, runner, cli_config, monkeypatch):
        cli_config.set("display.jobs_per_page", 10)
        client = _client_mock(monkeypatch, "cli.commands.jobs.PortalClient")
        client.list_jobs.return_value = {"jobs": [], "total": 0}

        result = runner.invoke(app, ["jobs", "list", "--install", "3"])

        assert result.exit_code == 0
        assert "No jobs match" in result.stdout
        assert client.list_jobs.call_args.kwargs["limit"] == 10
        assert client.list_jobs.call_args.kwargs["install_id"] == 3

    def test_show(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.commands.jobs.PortalClient")
        client.get_job.return_value = JOB

        result = runner.invoke(app, ["jobs", "show", "7"])

        assert result.exit_code == 0
        assert "Rate limited" in result.stdout
        client.get_job.assert_called_once_with(7)

    def test_cancel(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.commands.jobs.PortalClient")

        result = runner.invoke(app, ["jobs", "cancel", "7"])

        assert result.exit_code == 0
        assert "Job 7 cancelled" in result.stdout
        client.cancel_job.assert_called_once_with(7)

    def test_requeue_conflict(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.commands.jobs.PortalClient")
        client.requeue_job.side_effect = PortalAPIError(
            "Illegal job transition: pending -> pending"
        )

        result = runner.invoke(app, ["jobs", "requeue", "7"])

        assert result.exit_code == 1
        assert "Failed to requeue job" in result.stdout

    def test_stats(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.commands.jobs.PortalClient")
        client.job_stats.return_value = {
            "total_jobs": 5,
            "by_status": {"pending": 2, "completed": 3},
            "by_type": {"provision": 5},
            "queue_depth": 2,
            "expired_leases": 0,
        }

        result = runner.invoke(app, ["jobs", "stats"])

        assert result.exit_code == 0
        assert "Job Queue" in result.stdout


class TestInstallCommands:
    """Test install administration commands"""

    def test_show(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.commands.installs.PortalClient")
        client.get_install_by_order.return_value = {
            "id": 3,
            "status": "provisioning",
            "domain": None,
            "pending_jobs": 1,
            "created_at": "2026-01-01T11:00:00+00:00",
        }

        result = runner.invoke(app, ["installs", "show", "order_123"])

        assert result.exit_code == 0
        assert "Install 3" in result.stdout
        assert "provisioning" in result.stdout
        client.get_install_by_order.assert_called_once_with("order_123")

    def test_suspend(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.commands.installs.PortalClient")

        result = runner.invoke(app, ["installs", "suspend", "3"])

        assert result.exit_code == 0
        assert "Install 3 suspended" in result.stdout
        client.suspend_install.assert_called_once_with(3)

    def test_resume_conflict(self, runner, cli_config, monkeypatch):
        client = _client_mock(monkeypatch, "cli.commands.installs.PortalClient")
        client.resume_install.side_effect = PortalAPIError(
            "Illegal install transition: active -> active"
        )

        result = runner.invoke(app, ["installs", "resume", "3"])

        assert result.exit_code == 1
        assert "Failed to resume install" in result.stdout


class TestConfigCommands:
    """Test configuration commands"""

    def test_set_and_get(self, runner, cli_config):
        result = runner.invoke(app, ["config", "set", "api.base_url", "https://portal.example"])
        assert result.exit_code == 0

        result = runner.invoke(app, ["config", "get", "api.base_url"])
        assert "https://portal.example" in result.stdout

        stored = yaml.safe_load(cli_config.config_file.read_text())
        assert stored["api"]["base_url"] == "https://portal.example"
        # Untouched defaults survive a partial update
        assert stored["api"]["timeout"] == 30

    def test_admin_token_is_masked(self, runner, cli_config):
        result = runner.invoke(app, ["config", "set", "api.admin_token", "s3cret"])

        assert result.exit_code == 0
        assert "s3cret" not in result.stdout
        assert cli_config.get("api.admin_token") == "s3cret"

        shown = runner.invoke(app, ["config", "show"])
        assert "s3cret" not in shown.stdout

    def test_rejects_invalid_url(self, runner, cli_config):
        result = runner.invoke(app, ["config", "set", "api.base_url", "portal.example"])

        assert result.exit_code == 1
        assert not cli_config.config_file.exists()

    def test_timeout_must_be_numeric(self, runner, cli_config):
        bad = runner.invoke(app, ["config", "set", "api.timeout", "soon"])
        good = runner.invoke(app, ["config", "set", "api.timeout", "5"])

        assert bad.exit_code == 1
        assert good.exit_code == 0
        assert cli_config.get("api.timeout") == 5

    def test_get_unknown_key(self, runner, cli_config):
        result = runner.invoke(app, ["config", "get", "api.nothing"])

        assert result.exit_code == 0
        assert "not set" in result.stdout

    def test_reset(self, runner, cli_config):
        cli_config.set("api.base_url", "https://elsewhere.example")

        result = runner.invoke(app, ["config", "reset", "--yes"])

        assert result.exit_code == 0
        assert cli_config.get("api.base_url") == cli_config.get_default_config()["api"]["base_url"]


class TestProcessCommands:
    """Test worker and reaper entry points"""

    def test_worker(self, runner, monkeypatch):
        run = AsyncMock()
        monkeypatch.setattr("cli.commands.processes.run_worker_process", run)
        monkeypatch.setattr("cli.commands.processes.setup_logging", MagicMock())

        result = runner.invoke(app, ["worker", "--with-reaper"])

        assert result.exit_code == 0
        assert "Starting worker" in result.stdout
        assert run.await_args.kwargs == {"with_reaper": True}

    def test_reaper(self, runner, monkeypatch):
        run = AsyncMock()
        monkeypatch.setattr("cli.commands.processes.run_reaper_process", run)
        monkeypatch.setattr("cli.commands.processes.setup_logging", MagicMock())

        result = runner.invoke(app, ["reaper"])

        assert result.exit_code == 0
        run.assert_awaited_once()
