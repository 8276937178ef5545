"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_state = {"level": logging.INFO, "json": False, "debug": False}


def setup_logging(level: str = "INFO", json_output: bool = False, debug: bool = False) -> None:
    """Configure structlog with console (local) or JSON (serverless) output."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    _state.update(level=log_level, json=json_output, debug=debug)
    _configure()


def set_debug_mode(enabled: bool) -> None:
    """Switch DEBUG verbosity on or off for the running process."""
    _state["debug"] = enabled
    _configure()


def is_debug_mode() -> bool:
    return bool(_state["debug"])


def _configure() -> None:
    log_level = logging.DEBUG if _state["debug"] else _state["level"]
    renderer = (
        structlog.processors.JSONRenderer()
        if _state["json"]
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            *([structlog.processors.format_exc_info] if _state["json"] else []),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )


def _stderr_logger(*args: Any) -> structlog.PrintLogger:
    # Looked up per logger so a replaced sys.stderr is picked up.
    return structlog.PrintLogger(sys.stderr)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a named logger instance."""
    return structlog.get_logger(name)
