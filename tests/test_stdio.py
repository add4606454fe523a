"""Tests for ``Peer.stdio()`` run inside a child process.

The child is ``serve_fixture_stdio_peer.py``; this test process plays the
remote side over the child's stdin/stdout and watches its stderr.
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Iterator

import pytest

from tests.conftest import WAIT, stdio_peer_cmd

SpawnFactory = Callable[[str], subprocess.Popen[bytes]]


@pytest.fixture
def spawn() -> Iterator[SpawnFactory]:
    """Spawn stdio peer children and make sure they are reaped."""
    procs: list[subprocess.Popen[bytes]] = []

    def factory(mode: str) -> subprocess.Popen[bytes]:
        proc = subprocess.Popen(
            stdio_peer_cmd(mode),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
        procs.append(proc)
        return proc

    yield factory

    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait()
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()


def _send(proc: subprocess.Popen[bytes], message: dict[str, object]) -> None:
    assert proc.stdin is not None
    proc.stdin.write(json.dumps(message).encode() + b"\n")


def _stderr_line_starting(proc: subprocess.Popen[bytes], prefix: str) -> str:
    """Read child stderr until a line starting with *prefix* appears."""
    assert proc.stderr is not None
    for raw in proc.stderr:
        line = raw.decode().rstrip("\n")
        if line.startswith(prefix):
            return line
    raise AssertionError(f"child stderr ended without a {prefix!r} line")


def _finish(proc: subprocess.Popen[bytes]) -> tuple[int, str]:
    """Close the child's stdin and collect its exit code and remaining stderr."""
    _, err = proc.communicate(timeout=WAIT)
    return proc.returncode, err.decode()


class TestStdioPeer:
    """A peer bound to its own process's stdin/stdout."""

    def test_eof_exits_cleanly(self, spawn: SpawnFactory) -> None:
        """Stdin EOF ends the reader and the process exits 0."""
        proc = spawn("listen")
        code, _ = _finish(proc)
        assert code == 0

    def test_notification_reaches_handler(self, spawn: SpawnFactory) -> None:
        """A ping notification written to stdin runs the child's handler."""
        proc = spawn("listen")
        _send(proc, {"method": "ping", "params": {"n": 1}})
        assert _stderr_line_starting(proc, "ping:") == 'ping:{"n": 1}'
        code, _ = _finish(proc)
        assert code == 0

    def test_unhandled_notification_is_logged(self, spawn: SpawnFactory) -> None:
        """Notifications with no handler are dropped with an INFO log line."""
        proc = spawn("listen")
        _send(proc, {"method": "nobody", "params": None})
        code, err = _finish(proc)
        assert code == 0
        assert "Dropping notification 'nobody'" in err

    def test_child_calls_parent(self, spawn: SpawnFactory) -> None:
        """The child can call the parent and receive the result."""
        proc = spawn("call")
        assert proc.stdout is not None
        request = json.loads(proc.stdout.readline())
        assert request == {"id": 1, "method": "greet", "params": {"name": "child"}}

        _send(proc, {"id": request["id"], "result": "hello child"})
        assert _stderr_line_starting(proc, "result:") == 'result:"hello child"'
        code, _ = _finish(proc)
        assert code == 0

    def test_protocol_violation_exits_process(self, spawn: SpawnFactory) -> None:
        """Under the default EXIT policy a malformed line ends the process with status 1."""
        proc = spawn("listen")
        assert proc.stdin is not None
        proc.stdin.write(b"garbage\n")
        assert proc.wait(timeout=WAIT) == 1
        code, err = _finish(proc)
        assert code == 1
        assert "Protocol violation, terminating process" in err

    def test_violation_during_call_exits_process(self, spawn: SpawnFactory) -> None:
        """A bad response to the child's pending call also terminates it."""
        proc = spawn("call")
        assert proc.stdout is not None
        proc.stdout.readline()
        assert proc.stdin is not None
        proc.stdin.write(b"[1, 2, 3]\n")
        assert proc.wait(timeout=WAIT) == 1
