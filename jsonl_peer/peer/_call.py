"""Outgoing call record and completion signalling."""

from __future__ import annotations

import logging
import queue
from typing import Any

from jsonl_peer.peer._codec import ResultType
from jsonl_peer.peer._common import HookToken, _logger, _PeerHook
from jsonl_peer.peer._debug import fmt_value, wire_response_logger


class Call:
    """One outstanding or completed outgoing request.

    Created by :meth:`Peer.call`.  Once the call is put on its ``done``
    queue it is complete and must be treated as immutable.

    Attributes:
        id: Sequence number assigned at send time (``0`` until sent).
        method: Remote method name.
        params: Request payload, serialized as-is.
        result_type: Decoder applied to the response ``result``.
        result: Decoded result, set on successful completion.
        error: Local failure, set instead of ``result``.
        done: Completion queue the call is put on exactly once.

    """

    __slots__ = (
        "_completed",
        "_hook",
        "_hook_token",
        "done",
        "error",
        "id",
        "method",
        "params",
        "result",
        "result_type",
    )

    def __init__(
        self,
        method: str,
        params: Any,
        result_type: ResultType | None,
        done: queue.Queue[Call],
    ) -> None:
        """Initialize an unsent call."""
        self.id = 0
        self.method = method
        self.params = params
        self.result_type = result_type
        self.result: Any = None
        self.error: BaseException | None = None
        self.done = done
        self._completed = False
        self._hook: _PeerHook | None = None
        self._hook_token: HookToken | None = None

    def __repr__(self) -> str:
        """Return a string representation suitable for debugging."""
        state = "pending"
        if self._completed:
            state = "error" if self.error is not None else "ok"
        return f"Call(id={self.id}, method={self.method!r}, state={state})"

    @property
    def completed(self) -> bool:
        """Whether the call has been marked complete."""
        return self._completed

    def _complete(self) -> None:
        """Mark complete and deliver to ``done`` without blocking.

        Delivery is at-most-once: when the queue is full the completion is
        logged and discarded so a slow consumer cannot stall the reader.
        """
        if self._completed:
            return
        self._completed = True
        if self._hook is not None:
            try:
                self._hook.on_call_end(self._hook_token, self)
            except Exception:
                _logger.debug("Call hook on_call_end failed", exc_info=True)
        if wire_response_logger.isEnabledFor(logging.DEBUG):
            wire_response_logger.debug(
                "Call complete: id=%d, method=%s, error=%s, result=%s",
                self.id,
                self.method,
                self.error,
                fmt_value(self.result),
            )
        try:
            self.done.put_nowait(self)
        except queue.Full:
            _logger.warning(
                "Discarding completion of call %d (%s): done queue is full",
                self.id,
                self.method,
            )
