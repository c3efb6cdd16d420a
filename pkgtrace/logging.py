# Copyright 2025 Roger Cibrian
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Logging interface for PkgTrace.

This module provides a configurable logging interface that library modules
can use for output without depending on the CLI. Every pipeline component
accepts a logger argument; when none is passed the global logger is used.

The logger supports these output levels:

- Step: Always printed (for progress indicators)
- Warning/Error: Always printed
- Verbose: Only printed when verbose mode is enabled
- Debug: Only printed when debug mode is enabled (implies verbose)

Example:
    Configure global logger:
        ```python
        from pkgtrace.logging import get_logger, set_global_logger

        logger = get_logger(verbose=True, debug=False)
        set_global_logger(logger)
        ```

    Use with dependency injection:

        def my_function(logger=None):
            if logger is None:
                logger = get_global_logger()
            logger.verbose("MODULE", "Processing...")

    Capture structured events in tests:
        ```python
        logger = RecordingLogger()
        diff_snapshots(pre, post, logger=logger)
        assert logger.messages("warning")
        ```

Note:
    The default global logger is silent, so library functions won't print
    anything unless explicitly configured. The CLI configures the global
    logger when commands are executed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import sys
from typing import Literal, Protocol

EventLevel = Literal["step", "verbose", "debug", "warning", "error"]


class Logger(Protocol):
    """Protocol for logger implementations."""

    def step(self, step: int, total: int, message: str) -> None:
        """Print a step indicator for non-verbose mode.

        Args:
            step: Current step number (1-based).
            total: Total number of steps.
            message: Step description.
        """
        ...

    def verbose(self, prefix: str, message: str) -> None:
        """Print a verbose log message.

        Args:
            prefix: Message prefix (e.g., "CAPTURE", "DIFF").
            message: Log message.
        """
        ...

    def debug(self, prefix: str, message: str) -> None:
        """Print a debug log message.

        Args:
            prefix: Message prefix (e.g., "REGISTRY", "HTTP").
            message: Log message.
        """
        ...

    def warning(self, prefix: str, message: str) -> None:
        """Print a warning message (always shown)."""
        ...

    def error(self, prefix: str, message: str) -> None:
        """Print an error message (always shown)."""
        ...


class DefaultLogger:
    """Default logger implementation that prints to stdout.

    This logger respects verbose and debug flags and formats output
    consistently with the CLI output format. Warnings and errors go to
    stderr regardless of verbosity.
    """

    def __init__(self, verbose: bool = False, debug: bool = False) -> None:
        """Initialize logger with verbosity settings.

        Args:
            verbose: If True, print verbose messages.
            debug: If True, print debug messages (implies verbose).
        """
        self._verbose = verbose or debug
        self._debug = debug

    def step(self, step: int, total: int, message: str) -> None:
        """Print a step indicator for non-verbose mode."""
        print(f"[{step}/{total}] {message}")

    def verbose(self, prefix: str, message: str) -> None:
        """Print a verbose log message (only when verbose mode is active)."""
        if self._verbose:
            print(f"[{prefix}] {message}")

    def debug(self, prefix: str, message: str) -> None:
        """Print a debug log message (only when debug mode is active)."""
        if self._debug:
            print(f"[{prefix}] {message}")

    def warning(self, prefix: str, message: str) -> None:
        """Print a warning message."""
        print(f"[{prefix}] WARNING: {message}", file=sys.stderr)

    def error(self, prefix: str, message: str) -> None:
        """Print an error message."""
        print(f"[{prefix}] ERROR: {message}", file=sys.stderr)


class SilentLogger:
    """Logger that suppresses all output.

    Useful for programmatic usage when output is not desired.
    """

    def step(self, step: int, total: int, message: str) -> None:
        """Suppress step output."""
        pass

    def verbose(self, prefix: str, message: str) -> None:
        """Suppress verbose output."""
        pass

    def debug(self, prefix: str, message: str) -> None:
        """Suppress debug output."""
        pass

    def warning(self, prefix: str, message: str) -> None:
        """Suppress warning output."""
        pass

    def error(self, prefix: str, message: str) -> None:
        """Suppress error output."""
        pass


@dataclass(frozen=True)
class LogEvent:
    """A single structured log event recorded by RecordingLogger.

    Attributes:
        level: Event level ("step", "verbose", "debug", "warning", "error").
        prefix: Component prefix (e.g., "DIFF"). Step events use "STEP".
        message: Log message.
    """

    level: EventLevel
    prefix: str
    message: str


@dataclass
class RecordingLogger:
    """Logger that keeps every event in memory instead of printing.

    Lets each component be exercised without console or filesystem side
    effects while still asserting on what it reported.
    """

    events: list[LogEvent] = field(default_factory=list)

    def step(self, step: int, total: int, message: str) -> None:
        self.events.append(LogEvent("step", "STEP", f"[{step}/{total}] {message}"))

    def verbose(self, prefix: str, message: str) -> None:
        self.events.append(LogEvent("verbose", prefix, message))

    def debug(self, prefix: str, message: str) -> None:
        self.events.append(LogEvent("debug", prefix, message))

    def warning(self, prefix: str, message: str) -> None:
        self.events.append(LogEvent("warning", prefix, message))

    def error(self, prefix: str, message: str) -> None:
        self.events.append(LogEvent("error", prefix, message))

    def messages(self, level: EventLevel | None = None) -> list[str]:
        """Return recorded messages, optionally filtered by level."""
        return [e.message for e in self.events if level is None or e.level == level]


# Global logger instance (defaults to silent)
_global_logger: Logger = SilentLogger()


def get_logger(verbose: bool = False, debug: bool = False) -> Logger:
    """Get a logger instance with specified verbosity.

    Args:
        verbose: If True, logger will print verbose messages.
        debug: If True, logger will print debug messages (implies verbose).

    Returns:
        A logger instance configured with the specified verbosity.
    """
    return DefaultLogger(verbose=verbose, debug=debug)


def get_global_logger() -> Logger:
    """Get the global logger instance.

    Returns:
        The current global logger instance.

    Note:
        The default global logger is silent. Use set_global_logger() to
        configure it, or pass a logger instance directly to functions.
    """
    return _global_logger


def set_global_logger(logger: Logger) -> None:
    """Set the global logger instance.

    Args:
        logger: Logger instance to use as the global logger.

    Note:
        This affects all library functions called without an explicit
        logger. For better isolation, pass logger instances directly to
        functions instead of using the global logger.
    """
    global _global_logger
    _global_logger = logger
