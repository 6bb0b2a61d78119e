"""
Logging setup for the Slack MCP server

Logs go to stderr because stdout carries the MCP stdio transport.
"""

import logging
import sys
from typing import Optional

ROOT_LOGGER_NAME = "slack_mcp"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_handler: Optional[logging.Handler] = None


def get_logger(name: str) -> logging.Logger:
    """Get a logger inside the slack_mcp namespace"""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure the package logger once

    Args:
        level: Level name such as "DEBUG" or "info". Unknown names fall back to INFO.

    Returns:
        The package root logger
    """
    global _handler

    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(resolved)

    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(_handler)
        root.propagate = False

    return root
