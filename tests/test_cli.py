"""Tests for the command-line entry point"""

import json

import pytest
from click.testing import CliRunner

from dtp_client import __main__ as main_module
from dtp_client import __version__


class RecordingClient:
    """Replaces DtpClient; returns a fixed status."""

    instances = []
    status = 0

    def __init__(self, config, input_stream=None):
        self.config = config
        self.input_stream = input_stream
        RecordingClient.instances.append(self)

    async def run(self):
        return RecordingClient.status


@pytest.fixture
def runner(monkeypatch):
    RecordingClient.instances = []
    RecordingClient.status = 0
    monkeypatch.setattr(main_module, "DtpClient", RecordingClient)
    monkeypatch.setattr(main_module, "setup_logging", lambda debug: None)
    return CliRunner()


def test_runs_client_for_room(runner):
    result = runner.invoke(main_module.cli, ["room-42"])

    assert result.exit_code == 0
    [client] = RecordingClient.instances
    assert client.config.room_id == "room-42"
    assert client.config.debug is False


def test_options_override_config_file(runner, tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"server_url": "ws://from-file", "download_timeout": 60}))

    result = runner.invoke(
        main_module.cli,
        ["room-42", "--config", str(path), "--server", "ws://from-cli", "--debug"],
    )

    assert result.exit_code == 0
    config = RecordingClient.instances[0].config
    assert config.server_url == "ws://from-cli"
    assert config.download_timeout == 60
    assert config.debug is True


def test_exit_status_is_propagated(runner):
    RecordingClient.status = 1
    result = runner.invoke(main_module.cli, ["room-42"])
    assert result.exit_code == 1


def test_invalid_config_file(runner, tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"volume": 11}))

    result = runner.invoke(main_module.cli, ["room-42", "--config", str(path)])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output
    assert RecordingClient.instances == []


def test_version(runner):
    result = runner.invoke(main_module.cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
