"""Byte-stream transports that carry line-delimited JSON.

A transport is a pair of binary streams.  The peer calls ``readline()``
on :attr:`RpcTransport.reader` and writes whole lines to
:attr:`RpcTransport.writer`.  Writers made here are unbuffered, so a line
is on the wire once ``write`` returns; readers are buffered, so
``readline()`` does not cost one syscall per byte.
"""

from __future__ import annotations

import contextlib
import io
import logging
import os
import subprocess
import sys
import threading
from enum import Enum
from io import IOBase
from typing import IO, Protocol, cast, runtime_checkable

from jsonl_peer.peer._common import _logger
from jsonl_peer.peer._debug import wire_transport_logger

CHILD_STDERR_LOGGER = "jsonl_peer.subprocess.stderr"
"""Default logger for a child's stderr under ``StderrMode.PIPE``."""

DEFAULT_EXIT_TIMEOUT = 10.0
"""Seconds a child gets to exit on its own once its stdin is closed."""

_TERMINATE_GRACE = 2.0


@runtime_checkable
class RpcTransport(Protocol):
    """A duplex pair of binary streams."""

    @property
    def reader(self) -> IOBase:
        """Inbound stream; must support ``readline()``."""
        ...

    @property
    def writer(self) -> IOBase:
        """Outbound stream."""
        ...

    def close(self) -> None:
        """Release both streams."""
        ...


class PipeTransport:
    """A transport over two file objects that are already open."""

    __slots__ = ("_reader", "_writer")

    def __init__(self, reader: IOBase, writer: IOBase) -> None:
        """Wrap *reader* and *writer*; the transport owns both from now on."""
        self._reader = reader
        self._writer = writer

    @property
    def reader(self) -> IOBase:
        """Inbound stream."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Outbound stream."""
        return self._writer

    def close(self) -> None:
        """Close the outbound side first, so the far end reads EOF, then the inbound side."""
        with contextlib.suppress(OSError):
            self._writer.close()
        self._reader.close()


def _line_pipe() -> tuple[IOBase, IOBase]:
    """One ``os.pipe()`` as ``(buffered reader, unbuffered writer)``."""
    read_fd, write_fd = os.pipe()
    return os.fdopen(read_fd, "rb"), os.fdopen(write_fd, "wb", buffering=0)


def make_pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    """Two transports wired back to back.

    Returns:
        ``(local, remote)``: lines written on one are read on the other.

    """
    to_remote_r, to_remote_w = _line_pipe()
    to_local_r, to_local_w = _line_pipe()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug(
            "Pipe pair: local writes fd %d, remote writes fd %d",
            to_remote_w.fileno(),
            to_local_w.fileno(),
        )
    return PipeTransport(to_local_r, to_remote_w), PipeTransport(to_remote_r, to_local_w)


def stdio_transport() -> PipeTransport:
    """Transport over this process's stdin and stdout.

    The descriptors stay open after the transport closes.  When either is
    a terminal a one-line warning goes to stderr, since nothing typed
    there is likely to be a valid message.
    """
    if sys.stdin.isatty() or sys.stdout.isatty():
        sys.stderr.write("WARNING: stdin/stdout carry line-delimited JSON; this process is not interactive.\n")
    return PipeTransport(
        os.fdopen(sys.stdin.fileno(), "rb", closefd=False),
        os.fdopen(sys.stdout.fileno(), "wb", buffering=0, closefd=False),
    )


class StderrMode(Enum):
    """Where a child's stderr goes.

    Members:
        INHERIT: Shared with this process's stderr.
        PIPE: Read on a daemon thread; each non-blank line is logged at INFO.
        DEVNULL: Discarded.
    """

    INHERIT = "inherit"
    PIPE = "pipe"
    DEVNULL = "devnull"


_STDERR_TARGET: dict[StderrMode, int | None] = {
    StderrMode.INHERIT: None,
    StderrMode.PIPE: subprocess.PIPE,
    StderrMode.DEVNULL: subprocess.DEVNULL,
}


def _log_child_stderr(pipe: IO[bytes], logger: logging.Logger, pid: int) -> None:
    """Log each non-blank stderr line of child *pid* until EOF."""
    with pipe:
        for raw in iter(pipe.readline, b""):
            text = raw.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("%s", text, extra={"child_pid": pid})


class SubprocessTransport:
    """A child process reached through its stdin (outbound) and stdout (inbound).

    Closing the transport closes the child's stdin.  For a child running a
    peer, that EOF is the signal to fail its own pending calls and exit.
    A child still alive after *exit_timeout* seconds is sent SIGTERM, and
    killed if it outlives that too.
    """

    __slots__ = ("_closed", "_exit_timeout", "_proc", "_reader", "_stderr_thread")

    def __init__(
        self,
        cmd: list[str],
        *,
        stderr: StderrMode = StderrMode.INHERIT,
        stderr_logger: logging.Logger | None = None,
        exit_timeout: float = DEFAULT_EXIT_TIMEOUT,
    ) -> None:
        """Spawn *cmd*.

        Args:
            cmd: Command to spawn.
            stderr: Where the child's stderr goes.
            stderr_logger: Logger for ``StderrMode.PIPE``; defaults to
                :data:`CHILD_STDERR_LOGGER`.
            exit_timeout: Seconds :meth:`close` waits for the child to exit
                before terminating it.

        """
        self._proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=_STDERR_TARGET[stderr],
            bufsize=0,
        )
        self._exit_timeout = exit_timeout
        self._closed = False
        # bufsize=0 makes stdout a raw FileIO; buffer it for readline().
        self._reader = io.BufferedReader(cast("io.RawIOBase", self._proc.stdout))
        self._stderr_thread: threading.Thread | None = None
        if self._proc.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=_log_child_stderr,
                args=(self._proc.stderr, stderr_logger or logging.getLogger(CHILD_STDERR_LOGGER), self._proc.pid),
                name=f"stderr-{self._proc.pid}",
                daemon=True,
            )
            self._stderr_thread.start()
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("Spawned child %d (stderr=%s): %s", self._proc.pid, stderr.value, cmd)

    @property
    def proc(self) -> subprocess.Popen[bytes]:
        """The child process."""
        return self._proc

    @property
    def reader(self) -> IOBase:
        """The child's stdout."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """The child's stdin."""
        return cast("IOBase", self._proc.stdin)

    def close(self) -> None:
        """Close the child's stdin, reap the child, then release its stdout and stderr.

        Idempotent.
        """
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(OSError):
            self.writer.close()
        returncode = self._reap()
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=_TERMINATE_GRACE)
        self._reader.close()
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("Child %d exited with %s", self._proc.pid, returncode)

    def _reap(self) -> int:
        """Wait for the child to exit, escalating to SIGTERM and then SIGKILL."""
        try:
            return self._proc.wait(timeout=self._exit_timeout)
        except subprocess.TimeoutExpired:
            _logger.warning(
                "Child %d still running %.1fs after stdin closed; terminating", self._proc.pid, self._exit_timeout
            )
        self._proc.terminate()
        try:
            return self._proc.wait(timeout=_TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            _logger.warning("Child %d ignored SIGTERM; killing", self._proc.pid)
        self._proc.kill()
        return self._proc.wait()
