"""Tests for console helpers and structlog configuration."""

import json
import logging
from pathlib import Path
from unittest.mock import patch

import structlog
from rich.console import Console

from unitpulse import logging as console
from unitpulse.config import Config


def _capture() -> Console:
    return Console(record=True, width=200, force_terminal=False)


def test_log_levels_prefix_message():
    """Each level carries its tag and the message."""
    captured = _capture()
    with patch.object(console, "_console", captured):
        console.info("hello")
        console.warn("careful")
        console.error("broken")

    text = captured.export_text()
    assert "[info] hello" in text
    assert "[warn] careful" in text
    assert "[err]" in text and "broken" in text


def test_cycle_completed_mentions_failures():
    """Failed samplers are called out only when there are some."""
    captured = _capture()
    with patch.object(console, "_console", captured):
        console.cycle_completed(5, 5, 0.5)
        console.cycle_completed(5, 3, 0.5)

    lines = captured.export_text().splitlines()
    assert "failed" not in lines[0]
    assert "5/5 services" in lines[0]
    assert "2 failed" in lines[1]


def test_already_running_with_pid():
    """The PID of the other daemon is shown."""
    captured = _capture()
    with patch.object(console, "_console", captured):
        console.already_running(4242)
    assert "PID 4242" in captured.export_text()


def test_daemon_started_lists_sinks():
    """Startup names the source and sinks."""
    captured = _capture()
    with patch.object(console, "_console", captured):
        console.daemon_started("systemd", ["sqlite:/tmp/x.db", "http:http://c/events"])
        console.daemon_started("process", [])

    text = captured.export_text()
    assert "sqlite:/tmp/x.db, http:http://c/events" in text
    assert "sinks: none" in text


def test_configure_writes_json_lines(patched_config_paths: Path):
    """configure() sends structlog events to the JSON log file."""
    config = Config()
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        console.configure(config, console=False)
        structlog.get_logger().info("test_event", answer=42)
        for handler in root.handlers:
            handler.flush()

        lines = config.log_path.read_text().splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "test_event"
        assert record["answer"] == 42
        assert record["level"] == "info"
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
        structlog.reset_defaults()


def test_configure_verbose_sets_debug(patched_config_paths: Path):
    """verbose lowers the root level to DEBUG."""
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        console.configure(Config(), verbose=True, console=False)
        assert root.level == logging.DEBUG
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
        structlog.reset_defaults()
