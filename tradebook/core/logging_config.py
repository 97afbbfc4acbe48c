"""
Log routing for the ingest service.

The API process writes plain pipe-separated lines to stderr, which the
deployment's log collector picks up as-is. The operator console routes the
same records through rich so they render above its spinners and tables
instead of tearing them. Modules log via ``logging.getLogger(__name__)``
under the ``tradebook`` namespace.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional


_is_configured = False

# Client libraries that log every HTTP call or SQL statement at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "sqlalchemy.engine")

LINE_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def build_logging_config(level: str = "INFO", *, rich_output: bool = False) -> Dict[str, Any]:
    """Return the ``dictConfig`` mapping for one process."""
    log_level = level.upper()

    if rich_output:
        handler: Dict[str, Any] = {
            "class": "rich.logging.RichHandler",
            "level": log_level,
            "show_path": False,
            "markup": False,
        }
    else:
        handler = {
            "class": "logging.StreamHandler",
            "formatter": "pipe",
            "level": log_level,
        }

    loggers: Dict[str, Any] = {name: {"level": "WARNING"} for name in NOISY_LOGGERS}
    loggers["tradebook"] = {"level": log_level}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "pipe": {"format": LINE_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        },
        "handlers": {"default": handler},
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": loggers,
    }


def configure_logging(level: Optional[str] = None, *, rich_output: bool = False, force: bool = False) -> None:
    """
    Apply the logging config once per process.

    Args:
        level: Log level name for the root and ``tradebook`` loggers; defaults to INFO.
        rich_output: Render through rich, for the operator console.
        force: Re-apply even if an earlier call already configured logging.
    """
    global _is_configured

    if _is_configured and not force:
        return

    dictConfig(build_logging_config(level or "INFO", rich_output=rich_output))
    logging.getLogger(__name__).debug("Logging configured at %s", (level or "INFO").upper())

    _is_configured = True
