# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Bidirectional RPC peer over a single line-delimited JSON stream."""

import contextlib
import logging

from jsonl_peer.peer import (
    Call,
    ConnectionClosedError,
    Handler,
    InboundMessage,
    Peer,
    PeerConfig,
    PeerError,
    PipeTransport,
    ProtocolError,
    ProtocolErrorPolicy,
    RpcTransport,
    StderrMode,
    SubprocessTransport,
    connect,
    make_pipe_pair,
    stdio_transport,
)

# OpenTelemetry instrumentation (optional, requires `pip install jsonl-peer[otel]`)
with contextlib.suppress(ImportError):
    from jsonl_peer.otel import OtelConfig, instrument_peer

__all__ = [
    # Core
    "Peer",
    "PeerConfig",
    "Call",
    "Handler",
    "InboundMessage",
    # Errors
    "PeerError",
    "ProtocolError",
    "ProtocolErrorPolicy",
    "ConnectionClosedError",
    # Convenience
    "connect",
    # Transports
    "RpcTransport",
    "PipeTransport",
    "SubprocessTransport",
    "StderrMode",
    "make_pipe_pair",
    "stdio_transport",
]

# Conditionally include optional names only when actually imported
if "OtelConfig" in dir():
    __all__ += ["OtelConfig", "instrument_peer"]

# Attach NullHandler to the root logger so library users don't get
# "No handler found" warnings.  Must come after all imports so the
# logger hierarchy is fully populated.
logging.getLogger("jsonl_peer").addHandler(logging.NullHandler())
