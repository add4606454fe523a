# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for logging setup and the JSON formatter."""

from __future__ import annotations

import io
import json
import logging
import sys
from typing import Any

import pytest

from jsonl_peer.logging_utils import WIRE_DEBUG_ENV, PeerJsonFormatter, configure_logging


def _record(msg: str = "hello %s", args: tuple[Any, ...] = ("world",), **extra: Any) -> logging.LogRecord:
    record = logging.LogRecord("jsonl_peer.peer", logging.INFO, __file__, 1, msg, args, None)
    record.__dict__.update(extra)
    return record


# ---------------------------------------------------------------------------
# PeerJsonFormatter
# ---------------------------------------------------------------------------


class TestPeerJsonFormatter:
    """Tests for PeerJsonFormatter."""

    def test_standard_fields(self) -> None:
        """Output is one JSON object with the standard fields."""
        out = PeerJsonFormatter().format(_record())
        assert "\n" not in out
        obj = json.loads(out)
        assert obj["level"] == "INFO"
        assert obj["logger"] == "jsonl_peer.peer"
        assert obj["message"] == "hello world"
        assert obj["thread"] == "MainThread"
        assert "timestamp" in obj

    def test_extra_fields_included(self) -> None:
        """Fields passed via ``extra`` appear at the top level."""
        obj = json.loads(PeerJsonFormatter().format(_record(call_id=7, method="echo")))
        assert obj["call_id"] == 7
        assert obj["method"] == "echo"

    def test_reserved_fields_not_overwritten(self) -> None:
        """An extra named like a standard field does not replace it."""
        obj = json.loads(PeerJsonFormatter().format(_record(level="bogus", logger="bogus")))
        assert obj["level"] == "INFO"
        assert obj["logger"] == "jsonl_peer.peer"

    def test_non_serializable_extra_coerced(self) -> None:
        """Values json cannot encode are rendered with str()."""
        obj = json.loads(PeerJsonFormatter().format(_record(thing={1, 2})))
        assert obj["thing"] == "{1, 2}"

    def test_exception_included(self) -> None:
        """Exception tracebacks land under ``exception``."""
        try:
            raise RuntimeError("kaboom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        obj = json.loads(PeerJsonFormatter().format(record))
        assert "RuntimeError: kaboom" in obj["exception"]

    def test_no_exception_key_without_exc_info(self) -> None:
        """Records without an exception have no ``exception`` key."""
        obj = json.loads(PeerJsonFormatter().format(_record()))
        assert "exception" not in obj


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_text_format(self) -> None:
        """Text output carries level, thread and logger name."""
        stream = io.StringIO()
        configure_logging(logging.INFO, stream=stream)
        logging.getLogger("jsonl_peer.peer").info("Dropping notification %r", "x")
        line = stream.getvalue().strip()
        assert "INFO [MainThread] jsonl_peer.peer: Dropping notification 'x'" in line

    def test_json_format(self) -> None:
        """json_format=True emits PeerJsonFormatter lines."""
        stream = io.StringIO()
        configure_logging(logging.INFO, json_format=True, stream=stream)
        logging.getLogger("jsonl_peer.handler").warning("careful")
        obj = json.loads(stream.getvalue())
        assert obj["logger"] == "jsonl_peer.handler"
        assert obj["message"] == "careful"

    def test_level_filters(self) -> None:
        """Records below the level are not emitted."""
        stream = io.StringIO()
        configure_logging(logging.WARNING, stream=stream)
        logging.getLogger("jsonl_peer.peer").info("quiet")
        assert stream.getvalue() == ""

    def test_reconfigure_replaces_handler(self) -> None:
        """A second call replaces the first handler instead of adding another."""
        first = io.StringIO()
        second = io.StringIO()
        configure_logging(logging.INFO, stream=first)
        handler = configure_logging(logging.INFO, stream=second)
        logging.getLogger("jsonl_peer.peer").info("once")
        assert first.getvalue() == ""
        assert second.getvalue().count("once") == 1
        assert handler in logging.getLogger("jsonl_peer").handlers

    def test_defaults_to_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Without a stream, output goes to stderr and never stdout."""
        configure_logging(logging.INFO)
        logging.getLogger("jsonl_peer.peer").info("to stderr")
        captured = capsys.readouterr()
        assert "to stderr" in captured.err
        assert captured.out == ""

    def test_wire_debug_flag(self) -> None:
        """wire_debug=True enables the wire loggers even at a higher base level."""
        stream = io.StringIO()
        configure_logging(logging.WARNING, stream=stream, wire_debug=True)
        logging.getLogger("jsonl_peer.wire.request").debug("Send call: %s", "{}")
        assert "Send call" in stream.getvalue()

    @pytest.mark.parametrize(("value", "enabled"), [("1", True), ("yes", True), ("0", False), ("", False)])
    def test_wire_debug_from_env(self, monkeypatch: pytest.MonkeyPatch, value: str, enabled: bool) -> None:
        """The environment variable decides when wire_debug is not given."""
        monkeypatch.setenv(WIRE_DEBUG_ENV, value)
        configure_logging(logging.WARNING, stream=io.StringIO())
        assert logging.getLogger("jsonl_peer.wire").isEnabledFor(logging.DEBUG) is enabled


# ---------------------------------------------------------------------------
# Package logger
# ---------------------------------------------------------------------------


def test_package_has_null_handler() -> None:
    """Importing the package installs a NullHandler, so it is silent by default."""
    import jsonl_peer  # noqa: F401

    assert any(isinstance(h, logging.NullHandler) for h in logging.getLogger("jsonl_peer").handlers)
