"""Command-line interface for line-delimited JSON peers.

Spawns a worker process and talks to it over its stdin/stdout: sends one
call (printing the result) or one notification, optionally printing the
notifications the worker sends back.

Usage::

    jsonl-peer --cmd "my-worker" call echo x=1 y=hello
    jsonl-peer --cmd "my-worker" call echo --json '{"x": [1, 2]}'
    jsonl-peer --cmd "my-worker" notify ping --listen pong --wait 1

"""

from __future__ import annotations

import contextlib
import json
import logging
import shlex
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated

import typer

from jsonl_peer.logging_utils import configure_logging
from jsonl_peer.peer import Handler, Peer, PeerConfig, PeerError, ProtocolErrorPolicy, connect

# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class LogFormat(StrEnum):
    """Log output format on stderr."""

    text = "text"
    json = "json"


@dataclass
class _CliConfig:
    """Holds resolved CLI options."""

    cmd: str | None = None
    verbose: bool = False
    log_format: LogFormat = LogFormat.text


app = typer.Typer(
    name="jsonl-peer",
    help="CLI client for line-delimited JSON peers.",
    add_completion=False,
    no_args_is_help=True,
)

_echo_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def _main(
    ctx: typer.Context,
    cmd: Annotated[str | None, typer.Option("--cmd", "-c", help="Worker command to spawn")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging on stderr")] = False,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log format on stderr")] = LogFormat.text,
) -> None:
    """Configure the worker command and logging."""
    ctx.obj = _CliConfig(cmd=cmd, verbose=verbose, log_format=log_format)
    configure_logging(
        logging.DEBUG if verbose else logging.WARNING,
        json_format=log_format == LogFormat.json,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ensure_cmd(config: _CliConfig) -> list[str]:
    """Return the worker command split into argv, or fail."""
    if not config.cmd:
        raise typer.BadParameter("--cmd is required")
    return shlex.split(config.cmd)


def _parse_value(value_str: str) -> object:
    """Parse a CLI value as a JSON literal, falling back to the raw string."""
    try:
        return json.loads(value_str)
    except ValueError:
        return value_str


def _parse_key_value_args(args: list[str]) -> dict[str, object]:
    """Parse ``key=value`` arguments into a params object.

    Raises:
        typer.BadParameter: If an argument has no ``=``.

    """
    params: dict[str, object] = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {arg!r}")
        params[key] = _parse_value(value)
    return params


def _resolve_params(args: list[str] | None, json_input: str | None) -> object:
    """Build the params payload from ``key=value`` args or ``--json``."""
    if json_input and args:
        raise typer.BadParameter("--json and key=value args are mutually exclusive")
    if json_input:
        try:
            return json.loads(json_input)
        except ValueError as e:
            raise typer.BadParameter(f"--json is not valid JSON: {e}") from None
    if args:
        return _parse_key_value_args(args)
    return None


def _print_json(data: object) -> None:
    """Print one compact JSON line to stdout."""
    with _echo_lock:
        typer.echo(json.dumps(data, default=str))


def _notification_printer(method: str) -> Handler:
    """Return a handler that prints ``{"method": ..., "params": ...}``."""

    def _print(params: object) -> None:
        _print_json({"method": method, "params": params})

    return _print


@contextlib.contextmanager
def _open_peer(config: _CliConfig, listen: list[str] | None) -> Iterator[Peer]:
    """Spawn the worker with printers registered for *listen* methods."""
    argv = _ensure_cmd(config)
    handlers = {method: _notification_printer(method) for method in listen or []}
    peer_config = PeerConfig(protocol_error_policy=ProtocolErrorPolicy.BREAK, name="jsonl-peer-cli")
    with connect(argv, config=peer_config, handlers=handlers) as peer:
        yield peer


def _emit_error(e: BaseException) -> None:
    """Write an error to stderr as JSON."""
    err = {"type": type(e).__name__, "message": str(e)}
    typer.echo(json.dumps(err), err=True)


# Shared option annotations
_ArgsOpt = Annotated[list[str] | None, typer.Argument(help="key=value parameters")]
_JsonOpt = Annotated[str | None, typer.Option("--json", "-j", help="JSON params")]
_ListenOpt = Annotated[
    list[str] | None,
    typer.Option("--listen", "-l", help="Print inbound notifications with this method name (repeatable)"),
]
_WaitOpt = Annotated[float, typer.Option("--wait", "-w", help="Seconds to keep listening after sending")]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def call(
    ctx: typer.Context,
    method: Annotated[str, typer.Argument(help="Method name to call")],
    args: _ArgsOpt = None,
    json_input: _JsonOpt = None,
    listen: _ListenOpt = None,
    wait: _WaitOpt = 0.0,
) -> None:
    """Call a method on the worker and print the result as JSON."""
    config: _CliConfig = ctx.obj
    params = _resolve_params(args, json_input)
    try:
        with _open_peer(config, listen) as peer:
            result = peer.call_sync(method, params)
            _print_json(result)
            if wait > 0:
                time.sleep(wait)
    except typer.BadParameter:
        raise
    except PeerError as e:
        _emit_error(e)
        raise typer.Exit(1) from None
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


@app.command()
def notify(
    ctx: typer.Context,
    method: Annotated[str, typer.Argument(help="Notification method name")],
    args: _ArgsOpt = None,
    json_input: _JsonOpt = None,
    listen: _ListenOpt = None,
    wait: _WaitOpt = 0.0,
) -> None:
    """Send a one-way notification to the worker."""
    config: _CliConfig = ctx.obj
    params = _resolve_params(args, json_input)
    try:
        with _open_peer(config, listen) as peer:
            peer.notify(method, params)
            if wait > 0:
                time.sleep(wait)
    except typer.BadParameter:
        raise
    except PeerError as e:
        _emit_error(e)
        raise typer.Exit(1) from None
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
