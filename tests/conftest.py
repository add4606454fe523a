"""Shared test fixtures for jsonl-peer tests."""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from jsonl_peer.peer import Peer, PeerConfig, PipeTransport, ProtocolErrorPolicy, make_pipe_pair

_ECHO_WORKER = str(Path(__file__).parent / "serve_fixture_echo.py")
_STDIO_PEER_WORKER = str(Path(__file__).parent / "serve_fixture_stdio_peer.py")

# Generous upper bound for anything that crosses a thread or process boundary.
WAIT = 5.0


def echo_worker_cmd() -> list[str]:
    """Return the command to launch the echo worker subprocess."""
    return [sys.executable, _ECHO_WORKER]


def stdio_peer_cmd(mode: str) -> list[str]:
    """Return the command to launch a worker that runs ``Peer.stdio()``."""
    return [sys.executable, _STDIO_PEER_WORKER, mode]


def wait_for(predicate: Callable[[], bool], timeout: float = WAIT) -> bool:
    """Poll *predicate* until it is true or *timeout* expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class RemoteEnd:
    """The far side of a pipe pair, driven by the test.

    Reads what the peer writes and writes what the peer reads.
    """

    def __init__(self, transport: PipeTransport) -> None:
        self.transport = transport

    def read_line(self) -> bytes:
        """Read one raw line written by the peer (blocks)."""
        return self.transport.reader.readline()

    def read_message(self) -> dict[str, Any]:
        """Read and decode one line written by the peer."""
        line = self.read_line()
        assert line, "peer closed its writer"
        msg: dict[str, Any] = json.loads(line)
        return msg

    def send(self, message: dict[str, Any]) -> None:
        """Write one JSON message for the peer to read."""
        self.send_raw(json.dumps(message).encode() + b"\n")

    def send_raw(self, data: bytes) -> None:
        """Write raw bytes for the peer to read."""
        self.transport.writer.write(data)
        self.transport.writer.flush()

    def respond(self, call_id: int, result: Any) -> None:
        """Answer call *call_id* with *result*."""
        self.send({"id": call_id, "result": result})

    def close(self) -> None:
        """Close both directions; the peer sees EOF."""
        self.transport.close()


@pytest.fixture(autouse=True)
def _reset_peer_logging() -> Iterator[None]:
    """Undo ``configure_logging`` calls so handlers never outlive a test's stream."""
    yield
    root = logging.getLogger("jsonl_peer")
    for handler in list(root.handlers):
        if getattr(handler, "_jsonl_peer_configured", False):
            root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
    logging.getLogger("jsonl_peer.wire").setLevel(logging.NOTSET)


PeerFactory = Callable[..., tuple[Peer, RemoteEnd]]
"""Type alias for the ``make_peer`` fixture return type."""


@pytest.fixture
def make_peer() -> Iterator[PeerFactory]:
    """Return a factory for in-process ``(peer, remote)`` pairs over os.pipe().

    Peers default to ``ProtocolErrorPolicy.BREAK`` so a protocol violation
    cannot terminate the test process.  Everything created is torn down
    at the end of the test: remote side first, so the reader sees EOF.
    """
    created: list[tuple[Peer, RemoteEnd]] = []

    def factory(config: PeerConfig | None = None, **kwargs: Any) -> tuple[Peer, RemoteEnd]:
        local, remote_transport = make_pipe_pair()
        if config is None:
            config = PeerConfig(protocol_error_policy=ProtocolErrorPolicy.BREAK)
        peer = Peer(local, config=config, **kwargs)
        remote = RemoteEnd(remote_transport)
        created.append((peer, remote))
        return peer, remote

    yield factory

    for peer, remote in created:
        remote.close()
        assert peer.join(timeout=WAIT), "reader thread did not stop after remote EOF"
        peer.close()


@pytest.fixture
def peer_pair(make_peer: PeerFactory) -> tuple[Peer, RemoteEnd]:
    """A default ``(peer, remote)`` pair."""
    return make_peer()
