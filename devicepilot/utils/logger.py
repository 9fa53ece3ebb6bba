"""
Logging helpers for devicepilot.

Provides a thin wrapper around the standard logging module to simplify
consistent line-by-line output across the codebase.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Union

_LOG_FORMAT = "[%(asctime)s] %(name)s.%(levelname)s: %(message)s"


class StructuredLogger:
    """
    Convenience wrapper enabling structured line-by-line logging.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info_lines("Header", ["line 1", "line 2"])
    """

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, message: str, *args: Any) -> None:
        self._logger.debug(message, *args)

    def info(self, message: str, *args: Any) -> None:
        self._logger.info(message, *args)

    def warning(self, message: str, *args: Any) -> None:
        self._logger.warning(message, *args)

    def error(self, message: str, *args: Any) -> None:
        self._logger.error(message, *args)

    def exception(self, message: str, *args: Any) -> None:
        self._logger.exception(message, *args)

    def info_lines(
        self,
        header: Union[str, None],
        lines: Iterable[str],
        *,
        prefix: str = "  ",
    ) -> None:
        """
        Emit a header (optional) followed by each line as an INFO log.
        """
        if header:
            self.info(header)
        for line in lines:
            self.info(f"{prefix}{line}")


def configure_logging(level: Optional[Union[str, int]] = None) -> None:
    """Install the root handler used by the server entry point."""
    resolved = level or logging.INFO
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    logging.basicConfig(level=resolved, format=_LOG_FORMAT, datefmt="%H:%M:%S")


__all__ = ["StructuredLogger", "configure_logging"]
