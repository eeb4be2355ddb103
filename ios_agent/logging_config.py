"""Centralised logging configuration for ios-agent.

The CLI logs to stderr only, so stdout stays a single JSON envelope. The
daemon runs detached with its standard streams closed and therefore also
writes to its per-session log file.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

_LOGGING_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Libraries that log every request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def _coerce_level(value: Optional[str]) -> int:
    """Return the logging level named by ``value``, defaulting to INFO."""

    if not value:
        return logging.INFO
    numeric = getattr(logging, value.strip().upper(), None)
    if isinstance(numeric, int):
        return numeric
    try:
        return int(value)
    except ValueError:
        return logging.INFO


def _build_handlers(log_file: Optional[str]) -> List[logging.Handler]:
    formatter = logging.Formatter(_LOGGING_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


_configured = False


def configure_logging(force: bool = False, default_log_file: Optional[str] = None) -> None:
    """Initialise logging for the agent package.

    The configuration honours the following environment variables:

    ``IOS_AGENT_LOG_LEVEL``
        Root logging level (defaults to ``INFO``).
    ``IOS_AGENT_LOG_FILE``
        Optional file receiving the same records as standard error.
        ``default_log_file`` is used when it is unset; the daemon passes
        ``<runtime dir>/agent-ios-<session>.log``.
    """

    global _configured
    if _configured and not force:
        return

    level = _coerce_level(os.getenv("IOS_AGENT_LOG_LEVEL"))
    log_file = os.getenv("IOS_AGENT_LOG_FILE") or default_log_file

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)
    for handler in _build_handlers(log_file):
        root_logger.addHandler(handler)

    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
