"""Argparse-based CLI for loopbridge.

Commands:
    serve    run a control server until interrupted or asked to shut down
    send     send one session request and print the result
    status   report whether a bridge server is running for the project
    stop     stop the project's bridge server
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any

from loopbridge.client import BridgeClient
from loopbridge.config import CONFIG_FILENAME, Settings, get_version, load_settings
from loopbridge.errors import BridgeError, PortRangeExhaustedError, RequestTimeoutError
from loopbridge.models.credentials import Credential
from loopbridge.models.messages import BridgeMessage, MessageType
from loopbridge.paths import (
    format_uptime,
    get_bridge_dir,
    is_process_alive,
    read_credential,
    remove_credential,
    write_credential,
)
from loopbridge.server import ControlServer

logger = logging.getLogger(__name__)

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_ERROR = 2


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _live_credential(bridge_dir: Path) -> Credential | None:
    credential = read_credential(bridge_dir)
    if credential is not None and is_process_alive(credential.pid):
        return credential
    return None


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


async def _serve(project: Path, settings: Settings) -> int:
    bridge_dir = get_bridge_dir(project, settings.bridge_dir)
    running = _live_credential(bridge_dir)
    if running is not None:
        print(
            f"Bridge already running (pid {running.pid}, port {running.port})",
            file=sys.stderr,
        )
        return EXIT_ERROR

    server = ControlServer(
        host=settings.host,
        preferred_port=settings.bridge_port,
        port_range_size=settings.port_range_size,
        config={"baseUrl": settings.base_url} if settings.base_url else None,
        config_path=project / CONFIG_FILENAME,
    )
    try:
        port = await server.start()
    except (PortRangeExhaustedError, OSError) as e:
        print(f"Failed to start bridge: {e}", file=sys.stderr)
        return EXIT_ERROR

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    server.on_shutdown(stop_event.set)

    def log_result(message: BridgeMessage) -> None:
        if message.type is MessageType.SESSION_RESULT:
            outcome = "passed" if message.payload.get("passed") else "failed"
            logger.info(f"Result for plan {message.payload.get('planId')}: {outcome}")
        else:
            logger.info(f"Received {message.type.value}")

    server.on_result(log_result)

    try:
        write_credential(
            bridge_dir, Credential(port=port, token=server.token, pid=os.getpid())
        )
        print(f"Bridge listening on http://{settings.host}:{port} (Ctrl+C to stop)")
        await stop_event.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await server.stop()
        remove_credential(bridge_dir)
    print("Bridge stopped")
    return EXIT_PASSED


# ---------------------------------------------------------------------------
# send
# ---------------------------------------------------------------------------


def _load_payload(path: str | None) -> dict[str, Any]:
    if path is None:
        return {}
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


async def _send(
    project: Path,
    settings: Settings,
    plan_id: str,
    payload: dict[str, Any],
    timeout: float | None,
) -> int:
    running = _live_credential(get_bridge_dir(project, settings.bridge_dir))
    if running is not None:
        print(
            f"A bridge server is already running (pid {running.pid}); "
            "stop it before using 'send'",
            file=sys.stderr,
        )
        return EXIT_ERROR

    async with BridgeClient(project, settings) as client:
        print(f"Waiting for agent over {client.transport} transport...", file=sys.stderr)
        try:
            result = await client.send_request(plan_id, payload, timeout=timeout)
        except RequestTimeoutError as e:
            print(str(e), file=sys.stderr)
            return EXIT_ERROR
        except BridgeError as e:
            print(f"Request failed: {e}", file=sys.stderr)
            return EXIT_ERROR

    print(result.model_dump_json(by_alias=True, indent=2))
    return EXIT_PASSED if result.passed else EXIT_FAILED


# ---------------------------------------------------------------------------
# status / stop
# ---------------------------------------------------------------------------


def _status(bridge_dir: Path) -> int:
    credential = read_credential(bridge_dir)
    if credential is None:
        print("Bridge is not running.")
        return EXIT_FAILED
    if not is_process_alive(credential.pid):
        print(f"Bridge is not running (stale credential for pid {credential.pid}).")
        return EXIT_FAILED
    uptime = time.time() - credential.started_at.timestamp()
    print("Bridge is running")
    print(f"  pid:    {credential.pid}")
    print(f"  port:   {credential.port}")
    print(f"  uptime: {format_uptime(max(uptime, 0))}")
    return EXIT_PASSED


def _stop(bridge_dir: Path) -> int:
    credential = read_credential(bridge_dir)
    if credential is None:
        print("Bridge is not running.")
        return EXIT_FAILED
    if not is_process_alive(credential.pid):
        remove_credential(bridge_dir)
        print("Removed stale credential file.")
        return EXIT_PASSED
    try:
        os.kill(credential.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    remove_credential(bridge_dir)
    print(f"Stopped bridge (pid {credential.pid})")
    return EXIT_PASSED


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loopbridge",
        description="Message bridge between a local controller and a browser-embedded agent",
    )
    parser.add_argument(
        "-p", "--project", default=None, help="Project root (default: current directory)"
    )
    parser.add_argument("--log-level", default=None, help="Override the log level")
    parser.add_argument("-v", "--version", action="store_true", help="Print version")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run a bridge server in the foreground")

    p = subparsers.add_parser("send", help="Send a session request and wait for its result")
    p.add_argument("plan_id", help="Plan identifier")
    p.add_argument("--payload", default=None, help="JSON file with extra payload fields")
    p.add_argument(
        "--timeout", type=float, default=None, help="Seconds to wait for the result"
    )

    subparsers.add_parser("status", help="Show whether a bridge server is running")
    subparsers.add_parser("stop", help="Stop the running bridge server")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate handler."""
    parser = _build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    if args.version:
        print(get_version())
        return
    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_FAILED)

    project = Path(args.project or os.getcwd()).resolve()
    settings = load_settings(project)
    _configure_logging(args.log_level or settings.log_level)
    bridge_dir = get_bridge_dir(project, settings.bridge_dir)

    if args.command == "serve":
        code = asyncio.run(_serve(project, settings))
    elif args.command == "send":
        try:
            payload = _load_payload(args.payload)
        except (OSError, ValueError) as e:
            print(f"Invalid payload: {e}", file=sys.stderr)
            sys.exit(EXIT_ERROR)
        code = asyncio.run(_send(project, settings, args.plan_id, payload, args.timeout))
    elif args.command == "status":
        code = _status(bridge_dir)
    else:
        code = _stop(bridge_dir)

    if code:
        sys.exit(code)
