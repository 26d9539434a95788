"""Tests for the renta CLI."""

import logging

import pytest
from typer.testing import CliRunner

from renta_engine.cli import app


class _ClosingChannel:
    def __init__(self):
        self.commands = []
        self.closed = False

    async def publish(self, command):
        self.commands.append(command)
        return 1

    async def close(self):
        self.closed = True


@pytest.fixture
def cli_env(monkeypatch, fake_gateway):
    monkeypatch.setenv("RENTA_DB_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("RENTA_LOG_LEVEL", "WARNING")

    from renta_engine import deps
    from renta_engine.common.config import get_settings

    logger = logging.getLogger("renta_engine")
    handlers, propagate = list(logger.handlers), logger.propagate
    get_settings.cache_clear()
    deps.reset_singletons()
    deps._provider = fake_gateway
    deps._channel = _ClosingChannel()
    yield deps._channel

    deps.reset_singletons()
    get_settings.cache_clear()
    logger.handlers[:] = handlers
    logger.propagate = propagate


class TestSweepCommand:
    def test_sweep_prints_report_and_closes_channel(self, cli_env):
        result = CliRunner().invoke(app, ["sweep"])

        assert result.exit_code == 0, result.output
        assert "Commands re-sent" in result.output
        assert cli_env.closed is True
