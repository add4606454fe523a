"""Line-delimited JSON wire codec.

Outgoing::

    {"id":1,"method":"echo","params":{"x":1}}

Inbound::

    {"id":1,"result":{"x":1}}               response (``result`` key present)
    {"method":"ping","params":null}         notification (``result`` key absent)

Every message is exactly one line.  The presence of the ``result`` key,
even with a ``null`` value, makes a message a response; there is no
``error`` member.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from jsonl_peer.peer._common import NOTIFICATION_ID, ProtocolError

ResultType = Callable[[Any], Any]
"""Decoder for a response ``result``: a dataclass type or any one-argument callable."""


@dataclass(frozen=True)
class InboundMessage:
    """Decoded form of one inbound line.

    Attributes:
        id: Call ID being answered (``0`` when absent).
        method: Notification method name (empty for most responses).
        params: Notification parameters, passed opaquely to handlers.
        result: Raw JSON result of a response.
        has_result: Whether the ``result`` key was present on the wire.

    """

    id: int
    method: str
    params: Any = None
    result: Any = None
    has_result: bool = False

    @property
    def is_response(self) -> bool:
        """True for responses, False for notifications."""
        return self.has_result


def encode_call(call_id: int, method: str, params: Any) -> bytes:
    """Serialize an outgoing call (or notification when *call_id* is 0) to one line.

    Raises:
        TypeError: If *params* is not JSON serializable.
        ValueError: If *params* contains NaN or infinite floats.

    """
    msg: dict[str, Any] = {}
    if call_id != NOTIFICATION_ID:
        msg["id"] = call_id
    msg["method"] = method
    msg["params"] = params
    return json.dumps(msg, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8") + b"\n"


def decode_message(line: bytes) -> InboundMessage:
    """Parse one inbound line.

    A notification without a ``method`` decodes with an empty method name;
    the peer looks it up like any other name and drops it when nothing is
    registered under "".

    Raises:
        ProtocolError: If the line is not a JSON object (or is nested too
            deeply to parse), or carries an invalid ``id`` or ``method``.

    """
    try:
        obj = json.loads(line)
    except (ValueError, RecursionError) as exc:
        raise ProtocolError(f"Malformed inbound line: {exc}", line=line) from exc
    if not isinstance(obj, dict):
        raise ProtocolError(f"Inbound message must be a JSON object, got {type(obj).__name__}", line=line)

    raw_id = obj.get("id")
    if raw_id is None:
        msg_id = NOTIFICATION_ID
    elif isinstance(raw_id, bool) or not isinstance(raw_id, int) or raw_id < 0:
        raise ProtocolError(f"Invalid message id: {raw_id!r}", line=line)
    else:
        msg_id = raw_id

    method = obj.get("method")
    if method is None:
        method = ""
    elif not isinstance(method, str):
        raise ProtocolError(f"Invalid method name: {method!r}", line=line)

    has_result = "result" in obj
    return InboundMessage(
        id=msg_id,
        method=method,
        params=obj.get("params"),
        result=obj.get("result"),
        has_result=has_result,
    )


def decode_result(value: Any, result_type: ResultType | None) -> Any:
    """Convert a raw JSON *value* into the caller's expected reply shape.

    ``None`` keeps the raw value.  A dataclass type is instantiated from a
    JSON object by keyword.  Any other callable is applied to the value.

    Raises:
        ProtocolError: If the value does not fit *result_type*, whatever
            the converter raised.

    """
    if result_type is None:
        return value
    name = getattr(result_type, "__name__", repr(result_type))
    try:
        if isinstance(result_type, type) and dataclasses.is_dataclass(result_type):
            if not isinstance(value, dict):
                raise TypeError(f"expected a JSON object, got {type(value).__name__}")
            return result_type(**value)
        return result_type(value)
    except Exception as exc:
        raise ProtocolError(f"Cannot decode result into {name}: {exc}") from exc
