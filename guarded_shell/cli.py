#!/usr/bin/env python
"""Command-line entry point for guarded-shell.

Usage:
    guarded-shell --init-config PATH
    guarded-shell [-c CONFIG] tools
    guarded-shell [-c CONFIG] exec SHELL "COMMAND" [--cwd DIR]
    guarded-shell [-c CONFIG] ssh CONNECTION_ID "COMMAND"
    guarded-shell [-c CONFIG] history [--limit N]
    guarded-shell [-c CONFIG] serve

serve reads one JSON request per line from stdin:
    {"id": 1, "tool": "execute_command", "arguments": {"shell": "bash", "command": "ls"}}
and writes one JSON response per line to stdout, either
    {"id": 1, "text": "...", "isError": false, "metadata": {...}}
or
    {"id": 1, "error": {"code": -32600, "kind": "invalid_request", "message": "..."}}
Requests run concurrently; responses carry the request id.
"""
from __future__ import annotations

import argparse
import asyncio
import io
import json
import logging
import sys
import threading
from pathlib import Path
from typing import IO, Any, Dict, Optional, Set

from .config import create_default_config, load_config
from .errors import ToolError, ToolErrorKind
from .toolset import CommandToolset

logger = logging.getLogger(__name__)


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def handle_request(toolset: CommandToolset, line: str) -> Dict[str, Any]:
    """Decode one JSON request line, run it and build the response object."""
    try:
        request = json.loads(line)
    except json.JSONDecodeError as e:
        error = ToolError(f"Invalid JSON request: {e}", ToolErrorKind.INVALID_REQUEST)
        return {"id": None, "error": error.to_dict()}
    if not isinstance(request, dict) or not isinstance(request.get("tool"), str):
        error = ToolError("Request must be an object with a 'tool' name", ToolErrorKind.INVALID_REQUEST)
        return {"id": None, "error": error.to_dict()}

    request_id = request.get("id")
    try:
        response = await toolset.dispatch(request["tool"], request.get("arguments"))
    except ToolError as e:
        return {"id": request_id, "error": e.to_dict()}
    return {"id": request_id, **response.to_dict()}


def _private_reader(stream: IO[str]) -> IO[str]:
    """Return a line reader over `stream`'s descriptor, or `stream` itself.

    The reader thread must not hold the lock of `sys.stdin`'s own buffer,
    which the interpreter takes again while shutting down.
    """
    try:
        fd = stream.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        return stream
    encoding = getattr(stream, "encoding", None) or "utf-8"
    return open(fd, "r", encoding=encoding, errors="replace", closefd=False)


def _start_line_reader(
    stream: IO[str],
    loop: asyncio.AbstractEventLoop,
    lines: asyncio.Queue[Optional[str]],
) -> threading.Thread:
    """Feed lines from `stream` into `lines` from a daemon thread; None marks EOF."""
    reader = _private_reader(stream)

    def deliver(item: Optional[str]) -> None:
        try:
            loop.call_soon_threadsafe(lines.put_nowait, item)
        except RuntimeError:
            # Loop already closed; nobody is waiting for input any more.
            pass

    def pump() -> None:
        try:
            for line in iter(reader.readline, ""):
                deliver(line)
        except (OSError, ValueError) as e:
            logger.warning(f"Stopped reading requests: {e}")
        finally:
            deliver(None)

    thread = threading.Thread(target=pump, name="guarded-shell-stdin", daemon=True)
    thread.start()
    return thread


async def serve(
    toolset: CommandToolset,
    stdin: Optional[IO[str]] = None,
    stdout: Optional[IO[str]] = None,
) -> int:
    """Serve JSON-line requests until stdin closes.

    Lines are read on a daemon thread, so an interrupt never waits for the
    next line to arrive before the process can exit.
    """
    writer = stdout or sys.stdout
    lines: asyncio.Queue[Optional[str]] = asyncio.Queue()
    tasks: Set[asyncio.Task] = set()

    async def respond(line: str) -> None:
        response = await handle_request(toolset, line)
        writer.write(json.dumps(response) + "\n")
        writer.flush()

    logger.info(f"Serving tools: {', '.join(toolset.tool_names)}")
    _start_line_reader(stdin or sys.stdin, asyncio.get_running_loop(), lines)
    try:
        while True:
            line = await lines.get()
            if line is None:
                break
            if not line.strip():
                continue
            task = asyncio.ensure_future(respond(line))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        if tasks:
            await asyncio.gather(*tasks)
    finally:
        for task in list(tasks):
            task.cancel()
    return 0


async def _run_action(args: argparse.Namespace, toolset: CommandToolset) -> int:
    if args.action == "tools":
        catalog = [
            {
                "name": tool.name,
                "description": tool.description,
                "inputSchema": tool.parameters_json_schema,
            }
            for tool in toolset.describe_tools()
        ]
        print(json.dumps(catalog, indent=2))
        return 0
    if args.action == "serve":
        return await serve(toolset)

    if args.action == "exec":
        name = "execute_command"
        arguments: Dict[str, Any] = {"shell": args.shell, "command": args.command}
        if args.cwd:
            arguments["workingDir"] = args.cwd
    elif args.action == "ssh":
        name = "ssh_execute"
        arguments = {"connectionId": args.connection_id, "command": args.command}
    else:
        name = "get_command_history"
        arguments = {"limit": args.limit} if args.limit is not None else {}

    try:
        response = await toolset.dispatch(name, arguments)
    except ToolError as e:
        print(f"Error ({e.kind.value}): {e.message}", file=sys.stderr)
        return 1
    print(response.text)
    return 1 if response.is_error else 0


async def _run(args: argparse.Namespace, toolset: CommandToolset) -> int:
    async with toolset:
        return await _run_action(args, toolset)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="guarded-shell",
        description="Run shell commands locally or over SSH under a security policy.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument(
        "--init-config",
        metavar="PATH",
        help="Create a default config file at the specified path",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Log to stderr (-v info, -vv debug)",
    )
    actions = parser.add_subparsers(dest="action")
    actions.add_parser("tools", help="Print the tool catalog as JSON")
    actions.add_parser("serve", help="Serve JSON-line tool requests on stdin/stdout")

    exec_parser = actions.add_parser("exec", help="Run a command through a local shell")
    exec_parser.add_argument("shell", help="Shell profile name")
    exec_parser.add_argument("command", help="Command to execute")
    exec_parser.add_argument("--cwd", help="Working directory")

    ssh_parser = actions.add_parser("ssh", help="Run a command on a configured SSH connection")
    ssh_parser.add_argument("connection_id", help="SSH connection ID")
    ssh_parser.add_argument("command", help="Command to execute")

    history_parser = actions.add_parser("history", help="Show command history")
    history_parser.add_argument("--limit", type=int, help="Number of entries")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.init_config:
        try:
            path = create_default_config(Path(args.init_config))
        except OSError as e:
            print(f"Failed to create config file: {e}", file=sys.stderr)
            return 1
        print(f"Created default config at: {path}", file=sys.stderr)
        return 0

    if not args.action:
        parser.print_help(sys.stderr)
        return 2

    try:
        config = load_config(Path(args.config) if args.config else None)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(_run(args, CommandToolset(config)))
    except KeyboardInterrupt:
        print("\nAborted by user", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
