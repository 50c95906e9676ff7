# tests/test_logging.py
"""Tests for console output helpers and structlog configuration."""

import json
import logging

import pytest
import structlog

from usbmux_client import logging as out
from usbmux_client.config import Config


@pytest.fixture
def restore_logging():
    """Undo configure() so other tests keep the default setup."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestConsoleHelpers:
    """Tests for the console output functions."""

    def test_info_goes_to_stdout(self, capsys):
        out.info("hello there")

        captured = capsys.readouterr()
        assert "hello there" in captured.out
        assert captured.err == ""

    def test_warn_and_error_go_to_stderr(self, capsys):
        out.warn("careful")
        out.error("broken")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Warning:" in captured.err
        assert "careful" in captured.err
        assert "Error:" in captured.err
        assert "broken" in captured.err

    def test_device_line(self, capsys):
        out.device_line("4", {"ConnectionType": "USB", "SerialNumber": "00008030"})

        line = capsys.readouterr().out
        assert "4" in line
        assert "USB" in line
        assert "00008030" in line

    def test_device_line_missing_properties(self, capsys):
        out.device_line("4", {})
        assert "?" in capsys.readouterr().out


class TestConfigure:
    """Tests for configure()."""

    def test_level_from_config(self, restore_logging):
        config = Config()
        config.logging.level = "error"

        out.configure(config)

        assert logging.getLogger().level == logging.ERROR

    def test_verbose_forces_debug(self, restore_logging):
        out.configure(Config(), verbose=True)

        assert logging.getLogger().level == logging.DEBUG

    def test_file_logging_writes_json_lines(self, restore_logging, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        config = Config()
        config.logging.level = "info"
        config.logging.file_logging = True

        out.configure(config)
        structlog.get_logger("test").info("monitor_listening", devices=2)
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = config.log_path.read_text().strip().splitlines()
        event = json.loads(lines[-1])
        assert event["event"] == "monitor_listening"
        assert event["devices"] == 2
        assert event["level"] == "info"
        assert event["source"] == "usbmux-client"
        assert "timestamp" in event
