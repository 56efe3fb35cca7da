"""
Logging setup shared by the API and the maintenance CLI.

The API writes plain pipe-separated lines to stderr. The CLI renders its
results with rich, so it routes log records through ``RichHandler`` on the
same console instead of interleaving raw lines with its tables.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional

from rich.console import Console

PACKAGE_LOGGER = "tabular_ingest"
LINE_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Third-party loggers that flood INFO during retries and connection pooling
_QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer")

_is_configured = False


def _console_handler(log_level: str, rich_console: Optional[Console]) -> Dict[str, Any]:
    if rich_console is None:
        return {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": log_level,
        }
    return {
        "()": "rich.logging.RichHandler",
        "console": rich_console,
        "show_path": False,
        "rich_tracebacks": True,
        "level": log_level,
    }


def configure_logging(level: Optional[str] = None, rich_console: Optional[Console] = None) -> None:
    """
    Configure the root and package loggers once per process.

    Args:
        level: Log level name (e.g. "DEBUG"); defaults to INFO.
        rich_console: When given, records are rendered on this rich console.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {"format": LINE_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            },
            "handlers": {"console": _console_handler(log_level, rich_console)},
            "root": {"handlers": ["console"], "level": log_level},
            "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
        }
    )

    logging.getLogger(PACKAGE_LOGGER).setLevel(log_level)
    _is_configured = True
