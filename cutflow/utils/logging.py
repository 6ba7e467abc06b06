"""Structured Logging Configuration.

This module provides structured logging with JSON output and context binding.
Outputs one JSON object per line for production log aggregation.

Configuration:
- JSON output format (non-serializable values rendered with ``str``)
- Context binding support (job IDs, scene IDs, sub-step IDs)
- Log level from the LOG_LEVEL environment variable (default INFO)
"""

import json
import logging
import os
import sys
import traceback
from typing import Any


class StructuredLogger:
    """Wrapper around standard Logger with structured JSON logging support.

    Provides structured logging methods (info, error, warning, debug,
    exception) that accept keyword arguments and output JSON. ``bind``
    returns a child logger carrying fixed context.

    Example:
        >>> log = get_logger(__name__).bind(job_id="abc")
        >>> log.info("step_started", sub_step="split_scenes")
        {"event": "step_started", "job_id": "abc", "sub_step": "split_scenes"}
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a logger that adds ``context`` to every event."""
        return StructuredLogger(self._logger, {**self._context, **context})

    def _format_json(self, event: str, **kwargs: Any) -> str:
        """Format log entry as JSON with event and context fields."""
        log_entry = {"event": event, **self._context, **kwargs}
        return json.dumps(log_entry, default=str, ensure_ascii=False)

    def info(self, event: str, **kwargs: Any) -> None:
        """Log info message with structured context as JSON."""
        self._logger.info(self._format_json(event, **kwargs))

    def error(self, event: str, **kwargs: Any) -> None:
        """Log error message with structured context as JSON."""
        self._logger.error(self._format_json(event, **kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        """Log warning message with structured context as JSON."""
        self._logger.warning(self._format_json(event, **kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        """Log debug message with structured context as JSON."""
        self._logger.debug(self._format_json(event, **kwargs))

    def exception(self, event: str, **kwargs: Any) -> None:
        """Log error message including the active traceback."""
        self._logger.error(
            self._format_json(event, traceback=traceback.format_exc(), **kwargs)
        )


def _resolve_level() -> int:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured StructuredLogger instance
    """
    logger = logging.getLogger(name)

    # Configure basic logging if not already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(_resolve_level())

    return StructuredLogger(logger)
