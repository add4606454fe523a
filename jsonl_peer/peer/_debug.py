"""Debug logging infrastructure for wire protocol diagnostics.

Provides logger instances under the ``jsonl_peer.wire.*`` hierarchy and
formatting helpers for wire lines and payloads.  Enabling
``logging.getLogger("jsonl_peer.wire").setLevel(logging.DEBUG)`` gives
full visibility into what flows over the stream.

All formatting helpers return ``str`` and never log directly.
They are designed to be called inside ``isEnabledFor`` guards so
there is zero overhead when debug logging is disabled.
"""

from __future__ import annotations

import logging

# ---------------------------------------------------------------------------
# Logger hierarchy: jsonl_peer.wire.*
# ---------------------------------------------------------------------------

wire_request_logger = logging.getLogger("jsonl_peer.wire.request")
"""Outgoing calls and notifications."""

wire_response_logger = logging.getLogger("jsonl_peer.wire.response")
"""Inbound responses and their correlation."""

wire_notification_logger = logging.getLogger("jsonl_peer.wire.notification")
"""Inbound notifications and handler dispatch."""

wire_transport_logger = logging.getLogger("jsonl_peer.wire.transport")
"""Transport lifecycle (pipe, subprocess, stdio)."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80
"""Maximum repr length for individual values in fmt_value / fmt_line."""


def fmt_value(value: object) -> str:
    """Format a payload value compactly.

    Returns:
        ``repr(value)`` truncated to ``_MAX_VALUE_LEN`` characters.

    """
    r = repr(value)
    if len(r) > _MAX_VALUE_LEN:
        r = r[:_MAX_VALUE_LEN] + "..."
    return r


def fmt_line(line: bytes) -> str:
    """Format a raw wire line without its terminator.

    Returns:
        ``'{"id":1,"result":2}'`` decoded leniently, truncated like
        :func:`fmt_value`.

    """
    text = line.rstrip(b"\r\n").decode("utf-8", errors="replace")
    if len(text) > _MAX_VALUE_LEN:
        text = text[:_MAX_VALUE_LEN] + "..."
    return text
