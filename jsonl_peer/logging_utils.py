# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Logging setup for processes whose stdout is the wire.

A peer bound to stdio must never log to stdout: every byte there is read
by the remote side as protocol.  :func:`configure_logging` attaches a
single stderr handler to the ``jsonl_peer`` logger hierarchy, either as
plain text or as single-line JSON via :class:`PeerJsonFormatter`.

This module is **not** auto-imported by ``jsonl_peer``; import it explicitly::

    from jsonl_peer.logging_utils import configure_logging

    configure_logging(logging.DEBUG, json_format=True)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import TextIO

__all__ = ["WIRE_DEBUG_ENV", "PeerJsonFormatter", "configure_logging"]

WIRE_DEBUG_ENV = "JSONL_PEER_WIRE_DEBUG"
"""Environment variable that turns on DEBUG for the ``jsonl_peer.wire`` loggers."""

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"

# Build the set of attribute names that every LogRecord has by default.
# Anything *not* in this set was injected via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset(
    {"timestamp", "level", "logger", "thread", "message", "exception", "stack_info"}
)


class PeerJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    Standard fields (``timestamp``, ``level``, ``logger``, ``thread``,
    ``message``) are always present and cannot be overwritten by extra
    fields with the same name.  ``thread`` is the thread name, which tells
    the reader thread (``<name>-reader``) apart from handler threads
    (``<name>-handler``) and callers.

    Exception information is included under the ``"exception"`` key when
    present.  Non-serializable values are coerced to strings.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.message,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def _wire_debug_from_env() -> bool:
    return os.environ.get(WIRE_DEBUG_ENV, "").lower() in ("1", "true", "yes")


def configure_logging(
    level: int = logging.WARNING,
    *,
    json_format: bool = False,
    stream: TextIO | None = None,
    wire_debug: bool | None = None,
) -> logging.Handler:
    """Route ``jsonl_peer`` logs to stderr (or *stream*).

    Calling it again replaces the handler installed by the previous call.

    Args:
        level: Level for the ``jsonl_peer`` logger.
        json_format: Emit :class:`PeerJsonFormatter` lines instead of text.
        stream: Destination; defaults to ``sys.stderr``.
        wire_debug: Force DEBUG on ``jsonl_peer.wire``.  ``None`` reads
            :data:`WIRE_DEBUG_ENV`.

    Returns:
        The installed handler.

    """
    logger = logging.getLogger("jsonl_peer")
    for existing in list(logger.handlers):
        if getattr(existing, "_jsonl_peer_configured", False):
            logger.removeHandler(existing)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(PeerJsonFormatter() if json_format else logging.Formatter(_TEXT_FORMAT))
    handler._jsonl_peer_configured = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level)

    if wire_debug is None:
        wire_debug = _wire_debug_from_env()
    logging.getLogger("jsonl_peer.wire").setLevel(logging.DEBUG if wire_debug else logging.NOTSET)
    return handler
