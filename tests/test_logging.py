"""
Tests for pkgtrace.logging module.
"""

from __future__ import annotations

import pytest

from pkgtrace.logging import (
    DefaultLogger,
    RecordingLogger,
    SilentLogger,
    get_global_logger,
    get_logger,
    set_global_logger,
)

pytestmark = pytest.mark.unit


class TestDefaultLogger:
    """Tests for DefaultLogger output."""

    def test_quiet_by_default(self, capsys):
        logger = DefaultLogger()
        logger.verbose("X", "hidden")
        logger.debug("X", "hidden")
        logger.step(1, 2, "Working...")

        out = capsys.readouterr().out
        assert out == "[1/2] Working...\n"

    def test_verbose(self, capsys):
        logger = DefaultLogger(verbose=True)
        logger.verbose("CAPTURE", "shown")
        logger.debug("CAPTURE", "hidden")

        assert capsys.readouterr().out == "[CAPTURE] shown\n"

    def test_debug_implies_verbose(self, capsys):
        logger = DefaultLogger(debug=True)
        logger.verbose("A", "v")
        logger.debug("A", "d")

        assert capsys.readouterr().out == "[A] v\n[A] d\n"

    def test_warnings_and_errors_go_to_stderr(self, capsys):
        logger = DefaultLogger()
        logger.warning("DIFF", "careful")
        logger.error("DIFF", "broken")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == "[DIFF] WARNING: careful\n[DIFF] ERROR: broken\n"


class TestRecordingLogger:
    """Tests for RecordingLogger."""

    def test_events_recorded(self):
        logger = RecordingLogger()
        logger.step(1, 3, "Start")
        logger.verbose("A", "v")
        logger.warning("B", "w")

        assert logger.messages() == ["[1/3] Start", "v", "w"]
        assert logger.messages("warning") == ["w"]
        assert logger.events[2].prefix == "B"


class TestGlobalLogger:
    """Tests for the global logger accessors."""

    def test_set_and_get(self):
        previous = get_global_logger()
        try:
            logger = get_logger(verbose=True)
            set_global_logger(logger)
            assert get_global_logger() is logger
        finally:
            set_global_logger(previous)

    def test_silent_logger_prints_nothing(self, capsys):
        logger = SilentLogger()
        logger.step(1, 1, "x")
        logger.warning("A", "x")
        logger.error("A", "x")

        captured = capsys.readouterr()
        assert captured.out == "" and captured.err == ""
