"""Structured logging with a Rich console handler and optional JSON file output.

Rich output is used for interactive terminals; plain lines otherwise.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler


# Global console instance
_console: Optional[Console] = None

_PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_console() -> Console:
    """Get global Rich console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def is_tty() -> bool:
    """Check if stdout is a TTY (interactive terminal)."""
    return sys.stdout.isatty()


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    log_format: str = "text",  # "text" or "json"
    use_rich: Optional[bool] = None,
) -> None:
    """Setup logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file
        log_format: Format for file logging ("text" or "json")
        use_rich: Whether to use Rich for console output (auto-detects TTY if None)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if use_rich is None:
        use_rich = is_tty()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)

    console_handler: Union[RichHandler, logging.Handler]
    if use_rich:
        console_handler = RichHandler(
            console=get_console(),
            show_time=False,
            show_level=False,
            show_path=False,
            rich_tracebacks=True,
            markup=True,
        )
    else:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(_PLAIN_FORMAT, datefmt=_DATE_FORMAT))
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        if log_format == "json":
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(_PLAIN_FORMAT, datefmt=_DATE_FORMAT))
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return logging.getLogger(name)


def log_benchmark_start(logger: logging.Logger, strategy: str, backend: str, workers: int) -> None:
    logger.info(f"Starting run: {strategy} on {backend} ({workers} workers)")


def log_benchmark_complete(
    logger: logging.Logger,
    strategy: str,
    backend: str,
    elapsed_ms: float,
    result: Optional[float] = None,
) -> None:
    """Log run completion with its best time and result."""
    suffix = f" -> {result!r}" if result is not None else ""
    logger.info(f"Completed: {strategy} on {backend} - {elapsed_ms:.3f} ms{suffix}")


def log_benchmark_error(logger: logging.Logger, strategy: str, backend: str, error: str) -> None:
    logger.error(f"Failed: {strategy} on {backend} - {error}")


def log_benchmark_skipped(logger: logging.Logger, strategy: str, backend: str, reason: str) -> None:
    logger.warning(f"Skipping {strategy} on {backend}: {reason}")
