"""
Logging for agent-duplex.

All modules log through children of the ``agent_duplex`` logger. Records
passing through the handlers installed by ``setup_logging()`` carry a
``session_id`` attribute, taken from the session whose task emitted them
(``-`` outside any session), so interleaved sessions can be told apart.
"""

from __future__ import annotations

import contextvars
import logging
import sys
from typing import TextIO

ROOT = "agent_duplex"
DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(session_id)s]: %(message)s"

_root_logger = logging.getLogger(ROOT)
_session_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "agent_duplex_session", default="-"
)


class SessionFilter(logging.Filter):
    """Stamps the current session id onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_id.get()
        return True


def bind_session(session_id: str) -> contextvars.Token[str]:
    """
    Tag log records from the current task with *session_id*.

    Tasks created afterwards inherit the tag. Pass the returned token to
    ``unbind_session()`` to restore the previous value.
    """
    return _session_id.set(session_id)


def unbind_session(token: contextvars.Token[str]) -> None:
    _session_id.reset(token)


def setup_logging(
    level: str | int = "INFO",
    format: str | None = None,
    stream: TextIO | None = None,
    file: str | None = None,
) -> None:
    """
    Install handlers on the ``agent_duplex`` logger, replacing earlier ones.

    Logs go to *stream* (stderr by default, which keeps stdout free for the
    stdio transport) and optionally to *file*.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    for handler in _root_logger.handlers:
        handler.close()
    _root_logger.handlers.clear()
    _root_logger.setLevel(level)

    formatter = logging.Formatter(format or DEFAULT_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]
    if file:
        handlers.append(logging.FileHandler(file))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SessionFilter())
        _root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Child logger for a submodule, e.g. ``get_logger("session")``."""
    if name.startswith(f"{ROOT}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT}.{name}")
