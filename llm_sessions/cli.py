"""
Command-line interface for the LLM session manager.

The session daemon owns the model processes; every other command is a thin
HTTP client of it:

    llm-sessions serve                      # run the daemon
    llm-sessions start --model LLaMA-v2     # spawn or attach
    llm-sessions query --model LLaMA-v2 --text "Hello"
    echo "Hello" | llm-sessions query --model LLaMA-v2
    llm-sessions cancel --model LLaMA-v2 --id <query id>
    llm-sessions stop --model LLaMA-v2
    llm-sessions list
    llm-sessions status [--model LLaMA-v2]
    llm-sessions models

Diagnostics go to stderr as one line; the exit code identifies the error
(3 model not found, 4 spawn failed, 5 session closed, 6 process terminated,
7 timeout, 8 cancelled, 1 anything else).
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional
from urllib import parse as urlparse
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

from . import __version__
from .config import get_server_host, get_server_port, get_server_url
from .session.errors import ERRORS_BY_CODE, ProcessTerminated, QueryTimeout

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


class CommandError(Exception):
    """A command failed; carries the process exit code."""

    def __init__(self, message: str, exit_code: int = EXIT_FAILURE):
        self.exit_code = exit_code
        super().__init__(message)


def _request(
    method: str,
    path: str,
    payload: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Call the daemon and decode its JSON reply, mapping API errors to exit codes."""
    url = f"{get_server_url()}{path}"
    data = json.dumps(payload).encode() if payload is not None else None
    req = urlrequest.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method=method,
    )
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except HTTPError as e:
        try:
            detail = json.loads(e.read().decode()).get("detail")
        except (ValueError, AttributeError):
            detail = None
        if isinstance(detail, dict) and detail.get("code") in ERRORS_BY_CODE:
            raise CommandError(
                detail.get("message", str(e)),
                ERRORS_BY_CODE[detail["code"]].exit_code,
            ) from e
        if isinstance(detail, dict) and detail.get("message"):
            raise CommandError(detail["message"]) from e
        raise CommandError(f"Daemon returned HTTP {e.code}: {e.reason}") from e
    except URLError as e:
        raise CommandError(
            f"Cannot reach session daemon at {url}: {e.reason} "
            "(is 'llm-sessions serve' running?)"
        ) from e
    except TimeoutError as e:
        raise CommandError(
            f"No reply from session daemon within {timeout}s", QueryTimeout.exit_code
        ) from e


def _model_path(model: str, suffix: str = "") -> str:
    return f"/api/sessions/{urlparse.quote(model, safe='')}{suffix}"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the daemon in the foreground."""
    if args.catalog:
        os.environ["LLMS_CATALOG"] = os.path.abspath(args.catalog)
    os.environ["LLMS_LOG_LEVEL"] = args.log_level

    import uvicorn

    from .app import app

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return EXIT_OK


def cmd_start(args: argparse.Namespace) -> int:
    result = _request("POST", _model_path(args.model, "/start"))
    print(f"{args.model}: {result['message']}")
    return EXIT_OK


def cmd_query(args: argparse.Namespace) -> int:
    text = args.text if args.text is not None else sys.stdin.read()
    if not text.strip():
        raise CommandError("No query text given (use --text or stdin)", EXIT_USAGE)

    payload: Dict[str, Any] = {"text": text}
    if args.id:
        payload["query_id"] = args.id
    result = _request("POST", _model_path(args.model, "/query"), payload, timeout=args.timeout)

    print(result["text"])
    if result.get("truncated"):
        print(
            f"error: response from '{args.model}' truncated, the session process exited",
            file=sys.stderr,
        )
        return ProcessTerminated.exit_code
    return EXIT_OK


def cmd_cancel(args: argparse.Namespace) -> int:
    path = _model_path(args.model, f"/queries/{urlparse.quote(args.id, safe='')}/cancel")
    result = _request("POST", path)
    print(result["message"])
    return EXIT_OK if result["success"] else EXIT_FAILURE


def cmd_stop(args: argparse.Namespace) -> int:
    result = _request("POST", _model_path(args.model, "/stop"))
    print(f"{args.model}: {result['message']}")
    return EXIT_OK


def cmd_list(args: argparse.Namespace) -> int:
    for name in _request("GET", "/api/sessions")["sessions"]:
        print(name)
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    if args.model:
        result = _request("GET", _model_path(args.model))
    else:
        result = _request("GET", "/api/sessions/status")["sessions"]
    print(json.dumps(result, indent=2))
    return EXIT_OK


def cmd_models(args: argparse.Namespace) -> int:
    for name in _request("GET", "/api/models")["models"]:
        print(name)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llm-sessions",
        description="Supervise interactive local inference processes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the session daemon")
    p_serve.add_argument("--host", default=get_server_host(), help="Address to bind")
    p_serve.add_argument("--port", type=int, default=get_server_port(), help="Port to bind")
    p_serve.add_argument("--catalog", help="Model catalog JSON (default: LLMS_CATALOG or bundled)")
    p_serve.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Daemon log level",
    )
    p_serve.set_defaults(func=cmd_serve)

    p_start = sub.add_parser("start", help="Start (or attach to) a model session")
    p_start.add_argument("--model", required=True, help="Model name from the catalog")
    p_start.set_defaults(func=cmd_start)

    p_query = sub.add_parser("query", help="Send text to a model and print the response")
    p_query.add_argument("--model", required=True, help="Model name from the catalog")
    p_query.add_argument("--text", help="Query text (default: read stdin)")
    p_query.add_argument("--id", help="Query id, for cancelling from another shell")
    p_query.add_argument("--timeout", type=float, default=None, help="Client-side timeout in seconds")
    p_query.set_defaults(func=cmd_query)

    p_cancel = sub.add_parser("cancel", help="Cancel a query that has not been sent yet")
    p_cancel.add_argument("--model", required=True, help="Model name from the catalog")
    p_cancel.add_argument("--id", required=True, help="Query id given to 'query --id'")
    p_cancel.set_defaults(func=cmd_cancel)

    p_stop = sub.add_parser("stop", help="Stop a model session")
    p_stop.add_argument("--model", required=True, help="Model name from the catalog")
    p_stop.set_defaults(func=cmd_stop)

    p_list = sub.add_parser("list", help="Print active session names")
    p_list.set_defaults(func=cmd_list)

    p_status = sub.add_parser("status", help="Print session status as JSON")
    p_status.add_argument("--model", help="Only this model")
    p_status.set_defaults(func=cmd_status)

    p_models = sub.add_parser("models", help="Print configured model names")
    p_models.set_defaults(func=cmd_models)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except CommandError as e:
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return 130


def run() -> None:
    """Console script entry point."""
    raise SystemExit(main(sys.argv[1:]))
