# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Bidirectional RPC over a single line-delimited JSON stream.

A :class:`Peer` multiplexes two kinds of traffic over one duplex byte
stream (a pipe pair, a child process's stdin/stdout, or this process's
own stdio):

- **Calls** it sends, each correlated with exactly one inbound response.
- **Notifications** it receives, dispatched to registered handlers.

Wire Protocol
-------------
One JSON object per line, both directions::

    Peer→Remote:  {"id":1,"method":"echo","params":{"x":1}}
    Remote→Peer:  {"id":1,"result":{"x":1}}
    Remote→Peer:  {"method":"progress","params":{"done":3}}

A message carrying a ``result`` key (even ``null``) is a response; one
without is a notification and must name a ``method``.  Outgoing
notifications omit ``id`` (ID ``0`` is reserved and never assigned to a
call).  There is no ``error`` member: the remote side does not report
errors this way.

Concurrency
-----------
One daemon reader thread drains the inbound stream for the lifetime of
the peer.  Writes are serialized by a lock, and IDs are assigned under
that same lock, so ID order equals wire order.  Handlers run off the
reader thread (one thread per notification, or a bounded pool when
``PeerConfig.handler_workers`` is set) so a slow handler never delays
responses to other calls.

Completion
----------
Each :class:`Call` is put exactly once on its bounded ``done`` queue,
without blocking.  When the queue is full the completion is logged and
discarded, so delivery is at-most-once.

Failure Modes
-------------
- Write failure: reported on that call only (``Call.error``).
- Unmatched response / unhandled notification: logged and dropped.
- Stream end: every pending and later call fails with
  :class:`ConnectionClosedError`.
- Malformed inbound data: the process exits (``ProtocolErrorPolicy.EXIT``)
  or the peer breaks, failing all calls with :class:`ProtocolError`
  (``ProtocolErrorPolicy.BREAK``).

"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator, Mapping

from jsonl_peer.peer._call import Call
from jsonl_peer.peer._codec import InboundMessage, ResultType, decode_message, decode_result, encode_call
from jsonl_peer.peer._common import (
    DEFAULT_DONE_CAPACITY,
    NOTIFICATION_ID,
    ConnectionClosedError,
    Handler,
    HookToken,
    PeerConfig,
    PeerError,
    ProtocolError,
    ProtocolErrorPolicy,
    _CompositeHook,
    _PeerHook,
    _register_hook,
)
from jsonl_peer.peer._peer import Peer
from jsonl_peer.peer._transport import (
    PipeTransport,
    RpcTransport,
    StderrMode,
    SubprocessTransport,
    make_pipe_pair,
    stdio_transport,
)

__all__ = [
    "DEFAULT_DONE_CAPACITY",
    "NOTIFICATION_ID",
    "Call",
    "ConnectionClosedError",
    "Handler",
    "HookToken",
    "InboundMessage",
    "Peer",
    "PeerConfig",
    "PeerError",
    "PipeTransport",
    "ProtocolError",
    "ProtocolErrorPolicy",
    "ResultType",
    "RpcTransport",
    "StderrMode",
    "SubprocessTransport",
    "_CompositeHook",
    "_PeerHook",
    "_register_hook",
    "connect",
    "decode_message",
    "decode_result",
    "encode_call",
    "make_pipe_pair",
    "stdio_transport",
]


@contextlib.contextmanager
def connect(
    cmd: list[str],
    *,
    config: PeerConfig | None = None,
    handlers: Mapping[str, Handler] | None = None,
    stderr: StderrMode = StderrMode.INHERIT,
    stderr_logger: logging.Logger | None = None,
) -> Iterator[Peer]:
    """Spawn a subprocess and talk to it over its stdin/stdout.

    Context manager that yields a :class:`Peer` and closes it (and the
    child) on exit.

    Args:
        cmd: Command to spawn.
        config: Peer tunables.
        handlers: Notification handlers registered before the reader starts.
        stderr: How to handle the child's stderr stream (see :class:`StderrMode`).
        stderr_logger: Logger for ``StderrMode.PIPE`` output; ignored for
            other modes.  Defaults to
            ``logging.getLogger("jsonl_peer.subprocess.stderr")``.

    Yields:
        A running :class:`Peer`.

    """
    transport = SubprocessTransport(cmd, stderr=stderr, stderr_logger=stderr_logger)
    try:
        peer = Peer(transport, config=config, handlers=handlers)
    except BaseException:
        transport.close()
        raise
    with peer:
        yield peer
