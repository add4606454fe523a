# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""OpenTelemetry instrumentation for jsonl-peer.

Provides ``OtelConfig`` and ``instrument_peer()`` for adding distributed
tracing (spans) and metrics (counters, histograms) to a ``Peer``: one
CLIENT span per outgoing call, from send to completion, and one CONSUMER
span per dispatched notification.

Requires ``pip install jsonl-peer[otel]`` (opentelemetry-api + opentelemetry-sdk).

Usage::

    from jsonl_peer.otel import OtelConfig, instrument_peer

    peer = Peer(transport)
    instrument_peer(peer)  # uses global TracerProvider / MeterProvider
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from opentelemetry import trace
from opentelemetry.metrics import Counter, Histogram, Meter, MeterProvider, get_meter_provider
from opentelemetry.trace import SpanKind, StatusCode, Tracer, TracerProvider, get_tracer_provider

from jsonl_peer.peer._common import HookToken, _register_hook

if TYPE_CHECKING:
    from jsonl_peer.peer._call import Call
    from jsonl_peer.peer._peer import Peer

_INSTRUMENTATION_NAME = "jsonl_peer"
_INSTRUMENTATION_VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OtelConfig:
    """Configuration for OpenTelemetry instrumentation.

    Attributes:
        tracer_provider: Custom ``TracerProvider``; uses the global provider when ``None``.
        meter_provider: Custom ``MeterProvider``; uses the global provider when ``None``.
        enable_tracing: Enable span creation (default ``True``).
        enable_metrics: Enable counter/histogram recording (default ``True``).
        record_exceptions: Record exceptions on error spans (default ``True``).
        custom_attributes: Extra span/metric attributes merged into every call and notification.

    """

    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True
    record_exceptions: bool = True
    custom_attributes: Mapping[str, str] = field(default_factory=dict)


def instrument_peer(peer: Peer, config: OtelConfig | None = None) -> Peer:
    """Attach OpenTelemetry tracing and metrics to a peer.

    Calls already in flight are not traced.  May be called more than once
    (e.g. with different providers); hooks are chained.

    Args:
        peer: The ``Peer`` to instrument.
        config: Optional configuration; uses global providers and defaults when ``None``.

    Returns:
        The same *peer* instance (for chaining).

    """
    if config is None:
        config = OtelConfig()
    hook = _OtelPeerHook(config, peer.config.name)
    peer._hook = _register_hook(peer._hook, hook)
    return peer


# ---------------------------------------------------------------------------
# Internal hook
# ---------------------------------------------------------------------------


@dataclass
class _OtelHookToken:
    """Internal token carrying span + timing for the ``*_end`` callbacks."""

    span: trace.Span | None
    start_time: float
    method_name: str


class _OtelPeerHook:
    """Implements ``_PeerHook`` with OpenTelemetry spans and metrics."""

    __slots__ = (
        "_call_counter",
        "_call_histogram",
        "_config",
        "_meter",
        "_notification_counter",
        "_notification_histogram",
        "_peer_name",
        "_tracer",
    )

    def __init__(self, config: OtelConfig, peer_name: str) -> None:
        self._config = config
        self._peer_name = peer_name

        tp = config.tracer_provider or get_tracer_provider()
        self._tracer: Tracer = tp.get_tracer(_INSTRUMENTATION_NAME, _INSTRUMENTATION_VERSION)

        mp: MeterProvider = config.meter_provider or get_meter_provider()
        self._meter: Meter = mp.get_meter(_INSTRUMENTATION_NAME, _INSTRUMENTATION_VERSION)
        self._call_counter: Counter = self._meter.create_counter(
            "rpc.client.calls",
            unit="{call}",
            description="Number of outgoing calls completed",
        )
        self._call_histogram: Histogram = self._meter.create_histogram(
            "rpc.client.duration",
            unit="s",
            description="Time from send to completion of outgoing calls",
        )
        self._notification_counter: Counter = self._meter.create_counter(
            "rpc.peer.notifications",
            unit="{notification}",
            description="Number of inbound notifications handled",
        )
        self._notification_histogram: Histogram = self._meter.create_histogram(
            "rpc.peer.notification.duration",
            unit="s",
            description="Duration of notification handlers",
        )

    def _attributes(self, method: str) -> dict[str, str]:
        attrs: dict[str, str] = {
            "rpc.system": "jsonl_peer",
            "rpc.method": method,
            "rpc.jsonl_peer.peer": self._peer_name,
        }
        attrs.update(self._config.custom_attributes)
        return attrs

    def _start(self, method: str, kind: SpanKind, extra: Mapping[str, object] | None = None) -> _OtelHookToken:
        span: trace.Span | None = None
        if self._config.enable_tracing:
            attrs: dict[str, object] = dict(self._attributes(method))
            if extra:
                attrs.update(extra)
            span = self._tracer.start_span(f"jsonl_peer/{method}", kind=kind, attributes=attrs)  # type: ignore[arg-type]
        return _OtelHookToken(span=span, start_time=time.monotonic(), method_name=method)

    def _end(
        self,
        token: _OtelHookToken,
        error: BaseException | None,
        counter: Counter,
        histogram: Histogram,
    ) -> None:
        duration = time.monotonic() - token.start_time
        status = "error" if error is not None else "ok"

        if token.span is not None:
            if error is not None:
                token.span.set_status(StatusCode.ERROR, str(error))
                token.span.set_attribute("rpc.jsonl_peer.error_type", type(error).__name__)
                if self._config.record_exceptions:
                    token.span.record_exception(error)
            else:
                token.span.set_status(StatusCode.OK)
            token.span.end()

        if self._config.enable_metrics:
            metric_attrs = {**self._attributes(token.method_name), "status": status}
            counter.add(1, metric_attrs)
            histogram.record(duration, metric_attrs)

    # _PeerHook -----------------------------------------------------------

    def on_call_start(self, call: Call) -> HookToken:
        """Start a CLIENT span for an outgoing call."""
        return self._start(call.method, SpanKind.CLIENT, {"rpc.jsonl_peer.call_id": call.id})

    def on_call_end(self, token: HookToken, call: Call) -> None:
        """End the call span and record call metrics."""
        if not isinstance(token, _OtelHookToken):
            return
        self._end(token, call.error, self._call_counter, self._call_histogram)

    def on_notification_start(self, method: str) -> HookToken:
        """Start a CONSUMER span around a notification handler."""
        return self._start(method, SpanKind.CONSUMER)

    def on_notification_end(self, token: HookToken, method: str, error: BaseException | None) -> None:
        """End the notification span and record handler metrics."""
        if not isinstance(token, _OtelHookToken):
            return
        self._end(token, error, self._notification_counter, self._notification_histogram)
