"""Subprocess entry point running ``Peer.stdio()`` for stdio and exit-policy tests.

Modes (first argument):
    listen  Handle ``ping`` notifications by writing ``ping:<params>`` to
            stderr; exit 0 when stdin reaches EOF.  Uses the default
            ``ProtocolErrorPolicy.EXIT``, so a malformed line exits 1.
    call    Call ``greet`` on the parent, write the JSON result to stderr,
            then wait for stdin EOF and exit 0.
"""

import json
import logging
import sys

from jsonl_peer.logging_utils import configure_logging
from jsonl_peer.peer import Peer


def _on_ping(params: object) -> None:
    sys.stderr.write(f"ping:{json.dumps(params)}\n")
    sys.stderr.flush()


def main() -> None:
    """Run the requested mode."""
    configure_logging(logging.INFO)
    mode = sys.argv[1]
    peer = Peer.stdio(handlers={"ping": _on_ping})
    if mode == "call":
        result = peer.call_sync("greet", {"name": "child"})
        sys.stderr.write(f"result:{json.dumps(result)}\n")
        sys.stderr.flush()
    peer.join()


if __name__ == "__main__":
    main()
