"""Minimal logging interface used by the transports."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod


class Logger(ABC):
    """A logger that accepts printf-style messages at two levels."""

    @abstractmethod
    def infof(self, format: str, *args: object) -> None:
        """Log an informational message."""

    @abstractmethod
    def errorf(self, format: str, *args: object) -> None:
        """Log an error message."""


def _render(format: str, args: tuple[object, ...]) -> str:
    return format % args if args else format


class StdLogger(Logger):
    """Logger backed by a standard-library ``logging.Logger``."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def infof(self, format: str, *args: object) -> None:
        self.logger.info("INFO: %s", _render(format, args))

    def errorf(self, format: str, *args: object) -> None:
        self.logger.error("ERROR: %s", _render(format, args))


def default_logger() -> Logger:
    """Return a logger writing through the package's standard logger."""
    return StdLogger(logging.getLogger("mcpwire"))