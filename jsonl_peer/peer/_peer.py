# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The peer: pending call table, handler registry, reader loop, and call dispatch."""

from __future__ import annotations

import logging
import os
import queue
import sys
import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from types import TracebackType
from typing import Any

from jsonl_peer.peer._call import Call
from jsonl_peer.peer._codec import InboundMessage, ResultType, decode_message, decode_result, encode_call
from jsonl_peer.peer._common import (
    NOTIFICATION_ID,
    ConnectionClosedError,
    Handler,
    PeerConfig,
    PeerError,
    ProtocolError,
    ProtocolErrorPolicy,
    _handler_logger,
    _logger,
    _PeerHook,
)
from jsonl_peer.peer._debug import (
    fmt_line,
    fmt_value,
    wire_notification_logger,
    wire_request_logger,
    wire_response_logger,
)
from jsonl_peer.peer._transport import RpcTransport, stdio_transport

# Module attribute so it can be patched; exits without unwinding other threads.
_exit = os._exit


def _fresh_error(error: PeerError) -> PeerError:
    """Copy a terminal error so each caller raises its own instance."""
    copy = type(error)(*error.args)
    copy.__cause__ = error.__cause__
    if isinstance(error, ProtocolError) and isinstance(copy, ProtocolError):
        copy.line = error.line
    return copy


class Peer:
    """Bidirectional RPC peer over one duplex line-delimited JSON stream.

    Outgoing calls are correlated with inbound responses by ID; inbound
    notifications are dispatched to registered handlers.  A single daemon
    thread, started by the constructor, is the only reader of the inbound
    stream.  :meth:`call`, :meth:`call_sync`, :meth:`notify` and
    :meth:`handle` may be used from any thread.

    Usage::

        with Peer(transport) as peer:
            peer.handle("progress", on_progress)
            result = peer.call_sync("echo", {"x": 1})

    """

    __slots__ = (
        "_closed",
        "_config",
        "_executor",
        "_handler_lock",
        "_handlers",
        "_hook",
        "_lock",
        "_pending",
        "_reader",
        "_reader_thread",
        "_seq",
        "_terminal",
        "_transport",
        "_write_lock",
        "_writer",
    )

    def __init__(
        self,
        transport: RpcTransport,
        *,
        config: PeerConfig | None = None,
        handlers: Mapping[str, Handler] | None = None,
    ) -> None:
        """Bind to *transport* and start the reader thread.

        Args:
            transport: Duplex stream pair; the peer reads lines from
                ``transport.reader`` and writes lines to ``transport.writer``.
            config: Tunables; defaults to ``PeerConfig()``.
            handlers: Notification handlers registered before the reader
                starts, so notifications arriving immediately are not dropped.

        """
        self._transport = transport
        self._reader = transport.reader
        self._writer = transport.writer
        self._config = config if config is not None else PeerConfig()

        # Outbound write exclusion.  Held across ID assignment and the write
        # so ID order equals wire order.
        self._write_lock = threading.Lock()

        # Guards _seq, _pending and _terminal.  Only ever acquired alone or
        # while _write_lock is held, never the other way around.
        self._lock = threading.Lock()
        self._seq = 0
        self._pending: dict[int, Call] = {}
        self._terminal: PeerError | None = None
        self._closed = False

        self._handler_lock = threading.Lock()
        self._handlers: dict[str, Handler] = dict(handlers or {})

        self._hook: _PeerHook | None = None
        self._executor: ThreadPoolExecutor | None = None
        if self._config.handler_workers is not None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._config.handler_workers,
                thread_name_prefix=f"{self._config.name}-handler",
            )

        self._reader_thread = threading.Thread(
            target=self._run,
            name=f"{self._config.name}-reader",
            daemon=True,
        )
        self._reader_thread.start()

    @classmethod
    def stdio(
        cls,
        *,
        config: PeerConfig | None = None,
        handlers: Mapping[str, Handler] | None = None,
    ) -> Peer:
        """Create a peer bound to this process's stdin/stdout."""
        return cls(stdio_transport(), config=config, handlers=handlers)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> PeerConfig:
        """The peer configuration."""
        return self._config

    @property
    def transport(self) -> RpcTransport:
        """The underlying transport."""
        return self._transport

    @property
    def closed(self) -> bool:
        """Whether the peer reached a terminal state (closed or broken)."""
        with self._lock:
            return self._terminal is not None

    @property
    def pending_count(self) -> int:
        """Number of calls awaiting a response."""
        with self._lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def handle(self, method: str, handler: Handler) -> None:
        """Register *handler* for inbound notifications named *method*.

        A later registration for the same name replaces the earlier one.
        """
        with self._handler_lock:
            self._handlers[method] = handler

    def call(
        self,
        method: str,
        params: Any = None,
        result_type: ResultType | None = None,
        done: queue.Queue[Call] | None = None,
    ) -> Call:
        """Send a call and return without waiting for the reply.

        The returned :class:`Call` is put on *done* once it completes,
        successfully or with a local error.  Send failures are reported
        that way too; this method does not raise for them.

        Args:
            method: Remote method name.
            params: JSON-serializable payload.
            result_type: Decoder for the response ``result`` (see
                :func:`~jsonl_peer.peer._codec.decode_result`).
            done: Bounded completion queue.  Several calls may share one;
                completions that do not fit are discarded.  Defaults to a
                new queue of ``config.done_capacity``.

        Raises:
            ValueError: If *done* is unbounded (``maxsize <= 0``).  Checked
                before anything is sent.

        """
        if done is None:
            done = queue.Queue(maxsize=self._config.done_capacity)
        elif done.maxsize <= 0:
            raise ValueError(f"done queue must be bounded (maxsize >= 1), got maxsize={done.maxsize}")

        call = Call(method, params, result_type, done)
        self._send(call)
        return call

    def call_sync(self, method: str, params: Any = None, result_type: ResultType | None = None) -> Any:
        """Send a call and block until it completes.

        Returns:
            The decoded result.

        Raises:
            ConnectionClosedError: If the stream ended first.
            ProtocolError: If the peer broke on malformed inbound data.
            OSError: If the call could not be written.  Other encode or
                write failures are raised unchanged.

        """
        call = self.call(method, params, result_type, queue.Queue(maxsize=1))
        completed = call.done.get()
        if completed.error is not None:
            raise completed.error
        return completed.result

    def notify(self, method: str, params: Any = None) -> None:
        """Send a one-way notification; no ID is assigned and no reply is expected.

        Raises:
            ConnectionClosedError: If the peer is closed.
            ProtocolError: If the peer broke on malformed inbound data.
            OSError: If the write fails.
            TypeError: If *params* is not JSON serializable.

        """
        line = encode_call(NOTIFICATION_ID, method, params)
        with self._write_lock:
            with self._lock:
                terminal = self._terminal
            if terminal is not None:
                raise _fresh_error(terminal)
            if wire_request_logger.isEnabledFor(logging.DEBUG):
                wire_request_logger.debug("Send notification: %s", fmt_line(line))
            self._write_line(line)

    def close(self) -> None:
        """Fail pending calls with ``ConnectionClosedError`` and close the transport.

        Idempotent.  The writer is closed first so the remote side sees
        EOF; a reader blocked mid-read is released once the remote side
        closes its end.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        _logger.debug("Closing peer %s", self._config.name)
        self._shutdown(ConnectionClosedError("Peer closed"))
        self._transport.close()
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the reader thread to finish.

        Returns:
            ``True`` if the reader has stopped.

        """
        self._reader_thread.join(timeout)
        return not self._reader_thread.is_alive()

    def __enter__(self) -> Peer:
        """Enter the context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the peer."""
        self.close()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _send(self, call: Call) -> None:
        """Assign an ID, register and write *call*; complete it on failure."""
        with self._write_lock:
            with self._lock:
                terminal = self._terminal
                if terminal is None:
                    # Pre-increment: ID 0 is reserved for notifications.
                    self._seq += 1
                    call.id = self._seq
                    self._pending[call.id] = call
                    self._start_call_hook(call)

            if terminal is not None:
                call.error = _fresh_error(terminal)
                call._complete()
                return

            try:
                line = encode_call(call.id, call.method, call.params)
                if wire_request_logger.isEnabledFor(logging.DEBUG):
                    wire_request_logger.debug("Send call: %s", fmt_line(line))
                self._write_line(line)
            except Exception as exc:
                with self._lock:
                    owned = self._pending.pop(call.id, None) is not None
                if not owned:
                    # Already failed by a concurrent shutdown.
                    return
                _logger.debug("Send failed for call %d (%s): %s", call.id, call.method, exc)
                call.error = exc
                call._complete()

    def _write_line(self, line: bytes) -> None:
        """Write one full line and flush.  Caller holds ``_write_lock``."""
        view = memoryview(line)
        while view:
            written = self._writer.write(view)
            if not written:
                raise BlockingIOError(f"Short write: {len(view)} bytes left unwritten")
            view = view[written:]
        self._writer.flush()

    def _start_call_hook(self, call: Call) -> None:
        hook = self._hook
        if hook is None:
            return
        try:
            call._hook_token = hook.on_call_start(call)
            call._hook = hook
        except Exception:
            _logger.debug("Call hook on_call_start failed", exc_info=True)

    # ------------------------------------------------------------------
    # Reader loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        """Drain the inbound stream until EOF, a read error, or a protocol violation."""
        _logger.debug("Reader started for %s", self._config.name)
        while True:
            try:
                line = self._reader.readline()
            except (OSError, ValueError) as exc:
                _logger.debug("Reader stopped on read error: %s", exc)
                break
            if not line:
                _logger.debug("Inbound stream reached EOF")
                break
            if not line.strip():
                continue
            try:
                self._dispatch_line(line)
            except ProtocolError as exc:
                self._protocol_violation(exc)
                return
            except Exception as exc:
                violation = ProtocolError(f"Failed to process inbound line: {exc!r}", line=line)
                violation.__cause__ = exc
                self._protocol_violation(violation)
                return
        self._shutdown(ConnectionClosedError("Connection closed by remote peer"))

    def _dispatch_line(self, line: bytes) -> None:
        msg = decode_message(line)
        if msg.is_response:
            if wire_response_logger.isEnabledFor(logging.DEBUG):
                wire_response_logger.debug("Recv response: %s", fmt_line(line))
            self._handle_response(msg)
        else:
            if wire_notification_logger.isEnabledFor(logging.DEBUG):
                wire_notification_logger.debug("Recv notification: %s", fmt_line(line))
            self._handle_notification(msg)

    def _handle_response(self, msg: InboundMessage) -> None:
        with self._lock:
            call = self._pending.pop(msg.id, None)
        if call is None:
            _logger.warning("Dropping response %d: no pending call with that id", msg.id)
            return
        try:
            call.result = decode_result(msg.result, call.result_type)
        except ProtocolError as exc:
            call.error = exc
            call._complete()
            raise
        call._complete()

    def _handle_notification(self, msg: InboundMessage) -> None:
        with self._handler_lock:
            handler = self._handlers.get(msg.method)
        if handler is None:
            _logger.info("Dropping notification %r: no handler registered", msg.method)
            return
        if self._executor is not None:
            try:
                self._executor.submit(self._run_handler, msg.method, handler, msg.params)
            except RuntimeError:
                _logger.info("Dropping notification %r: peer is shutting down", msg.method)
            return
        threading.Thread(
            target=self._run_handler,
            args=(msg.method, handler, msg.params),
            name=f"{self._config.name}-handler",
            daemon=True,
        ).start()

    def _run_handler(self, method: str, handler: Handler, params: Any) -> None:
        """Invoke *handler*; exceptions are logged, there is no one to report them to."""
        hook = self._hook
        token = None
        if hook is not None:
            try:
                token = hook.on_notification_start(method)
            except Exception:
                _logger.debug("Notification hook on_notification_start failed", exc_info=True)
                hook = None
        if wire_notification_logger.isEnabledFor(logging.DEBUG):
            wire_notification_logger.debug("Dispatch %s(%s)", method, fmt_value(params))
        error: BaseException | None = None
        try:
            handler(params)
        except Exception as exc:
            error = exc
            _handler_logger.exception("Handler for %r raised", method)
        finally:
            if hook is not None:
                try:
                    hook.on_notification_end(token, method, error)
                except Exception:
                    _logger.debug("Notification hook on_notification_end failed", exc_info=True)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _protocol_violation(self, exc: ProtocolError) -> None:
        if self._config.protocol_error_policy is ProtocolErrorPolicy.EXIT:
            _logger.critical("Protocol violation, terminating process: %s", exc)
            sys.stderr.flush()
            _exit(1)
            return
        _logger.error("Protocol violation, peer is broken: %s", exc)
        self._shutdown(exc)

    def _shutdown(self, error: PeerError) -> None:
        """Enter the terminal state (first error wins) and fail every pending call."""
        with self._lock:
            if self._terminal is None:
                self._terminal = error
            pending = list(self._pending.values())
            self._pending.clear()
        if pending:
            _logger.debug("Failing %d pending call(s): %s", len(pending), error)
        for call in pending:
            call.error = _fresh_error(error)
            call._complete()
