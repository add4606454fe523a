# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Constants, errors, configuration, and hook protocol for the peer."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Final, Protocol, TypeAlias

if TYPE_CHECKING:
    from jsonl_peer.peer._call import Call

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_logger = logging.getLogger("jsonl_peer.peer")
_handler_logger = logging.getLogger("jsonl_peer.handler")

NOTIFICATION_ID: Final[int] = 0
"""Reserved call ID: never assigned to a call, omitted from the wire."""

DEFAULT_DONE_CAPACITY: Final[int] = 10
"""Capacity of the completion queue created when ``Peer.call`` is given none."""

Handler = Callable[[Any], None]
"""Notification handler: receives the decoded ``params`` of the notification."""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PeerError(Exception):
    """Base class for errors raised by the peer."""


class ProtocolError(PeerError):
    """The remote side sent something that violates the line protocol.

    Raised for malformed inbound lines and for response results that
    cannot be decoded into the caller's ``result_type``.
    """

    def __init__(self, message: str, *, line: bytes | None = None) -> None:
        """Initialize with a description and the offending raw line, if any."""
        super().__init__(message)
        self.line = line


class ConnectionClosedError(PeerError):
    """The stream ended (or the peer was closed) before the call completed."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ProtocolErrorPolicy(Enum):
    """What the reader does when the remote side violates the protocol.

    Members:
        EXIT: Log at CRITICAL and terminate the process with status 1.
        BREAK: Put the peer in a terminal broken state.  Every pending and
            future call completes with :class:`ProtocolError`.
    """

    EXIT = "exit"
    BREAK = "break"


@dataclass(frozen=True)
class PeerConfig:
    """Tunables for a :class:`~jsonl_peer.peer.Peer`.

    Attributes:
        done_capacity: Capacity of completion queues created by
            ``Peer.call`` when the caller supplies none.
        handler_workers: ``None`` runs every notification handler on its
            own daemon thread.  An integer bounds handler concurrency with
            a thread pool of that size; excess notifications queue.
        protocol_error_policy: Reaction to malformed inbound data.
        name: Prefix for reader and handler thread names.

    """

    done_capacity: int = DEFAULT_DONE_CAPACITY
    handler_workers: int | None = None
    protocol_error_policy: ProtocolErrorPolicy = ProtocolErrorPolicy.EXIT
    name: str = "jsonl-peer"

    def __post_init__(self) -> None:
        """Validate field ranges."""
        if self.done_capacity < 1:
            raise ValueError(f"done_capacity must be at least 1, got {self.done_capacity}")
        if self.handler_workers is not None and self.handler_workers < 1:
            raise ValueError(f"handler_workers must be None or at least 1, got {self.handler_workers}")


# ---------------------------------------------------------------------------
# Hook protocol
# ---------------------------------------------------------------------------

HookToken: TypeAlias = object
"""Opaque token returned by the ``*_start`` hook methods."""


class _PeerHook(Protocol):
    """Internal protocol for observability hooks around calls and notifications."""

    def on_call_start(self, call: Call) -> HookToken:
        """Called after the call was assigned an ID, before it is written."""
        ...

    def on_call_end(self, token: HookToken, call: Call) -> None:
        """Called once the call completed (successfully or with an error)."""
        ...

    def on_notification_start(self, method: str) -> HookToken:
        """Called on the handler thread before the handler runs."""
        ...

    def on_notification_end(self, token: HookToken, method: str, error: BaseException | None) -> None:
        """Called on the handler thread after the handler returned or raised."""
        ...


class _CompositeHook:
    """Fans every hook callback out to several hooks in registration order."""

    __slots__ = ("_hooks",)

    def __init__(self, hooks: tuple[_PeerHook, ...]) -> None:
        self._hooks = hooks

    def on_call_start(self, call: Call) -> HookToken:
        return tuple(h.on_call_start(call) for h in self._hooks)

    def on_call_end(self, token: HookToken, call: Call) -> None:
        if not isinstance(token, tuple):
            return
        for h, t in zip(self._hooks, token, strict=True):
            h.on_call_end(t, call)

    def on_notification_start(self, method: str) -> HookToken:
        return tuple(h.on_notification_start(method) for h in self._hooks)

    def on_notification_end(self, token: HookToken, method: str, error: BaseException | None) -> None:
        if not isinstance(token, tuple):
            return
        for h, t in zip(self._hooks, token, strict=True):
            h.on_notification_end(t, method, error)


def _register_hook(existing: _PeerHook | None, hook: _PeerHook) -> _PeerHook:
    """Return a hook that calls *existing* (if any) and then *hook*."""
    if existing is None:
        return hook
    if isinstance(existing, _CompositeHook):
        return _CompositeHook((*existing._hooks, hook))
    return _CompositeHook((existing, hook))
