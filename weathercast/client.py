"""
Command-line MCP client: starts the server, calls ``weather`` and prints the forecast.
"""

import argparse
import asyncio
import shlex
import sys
from typing import Any, Dict, List, Optional, Sequence, TextIO

import structlog

from . import version
from .core.config import Settings, get_settings
from .core.logging import setup_logging
from .mcp.errors import MCPError, TransportError
from .mcp.protocol import CallResult, Implementation
from .mcp.session import ClientSession
from .mcp.transport import STREAM_LIMIT, StreamTransport, Transport

logger = structlog.get_logger(__name__)

DEFAULT_SERVER_COMMAND = [sys.executable, "-m", "weathercast.server"]


def build_arguments(
    city: str,
    country: str,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
) -> Dict[str, Any]:
    arguments: Dict[str, Any] = {"city": city, "country": country}
    if from_date:
        arguments["fromDate"] = from_date
    if to_date:
        arguments["toDate"] = to_date
    return arguments


async def run_weather_call(
    transport: Transport,
    arguments: Dict[str, Any],
    settings: Settings,
    out: TextIO = sys.stdout,
    err: TextIO = sys.stderr,
) -> int:
    """Handshake, call ``weather`` and print its text. Returns the exit status."""
    session = ClientSession(
        transport,
        Implementation(name=settings.client_name, version=settings.client_version),
        protocol_version=settings.protocol_version,
        request_timeout=settings.request_timeout_s,
    )
    async with session:
        await session.initialize()
        result = await session.call_tool("weather", arguments)
    return print_result(result, out, err)


def print_result(result: CallResult, out: TextIO, err: TextIO) -> int:
    stream = err if result.is_error else out
    for text in result.texts():
        print(text, file=stream)
    return 1 if result.is_error else 0


async def spawn_server(command: List[str]) -> "tuple[asyncio.subprocess.Process, StreamTransport]":
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as exc:
        raise TransportError(f"Failed to start server {command[0]!r}: {exc}") from exc
    logger.debug("Started MCP server", command=command, pid=process.pid)
    return process, StreamTransport(process.stdout, process.stdin)


async def run(args: argparse.Namespace, settings: Settings) -> int:
    command = shlex.split(args.server_command) if args.server_command else DEFAULT_SERVER_COMMAND
    process, transport = await spawn_server(command)
    try:
        return await run_weather_call(
            transport,
            build_arguments(args.city, args.country, args.from_date, args.to_date),
            settings,
        )
    finally:
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Server did not exit, terminating", pid=process.pid)
            process.terminate()
            await process.wait()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Ask the weather MCP server for a forecast")
    parser.add_argument("--version", action="version", version=f"%(prog)s {version()}")
    parser.add_argument("--city", default="Warsaw")
    parser.add_argument("--country", default="Poland")
    parser.add_argument("--from-date", default=None, help="YYYY-MM-DD, defaults to today")
    parser.add_argument("--to-date", default=None, help="YYYY-MM-DD, defaults to --from-date")
    parser.add_argument(
        "--server-command",
        default=None,
        help="Command that starts the MCP server (default: this Python running weathercast.server)",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(args.log_level or settings.log_level, json_logs=settings.log_json)

    try:
        return asyncio.run(run(args, settings))
    except MCPError as exc:
        logger.error("Weather request failed", code=exc.kind, error=exc.message)
        print(f"weathercast-client: {exc.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
