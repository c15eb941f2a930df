"""
MCP server exposing the ``weather`` tool over stdio.

Startup order:
1. Load settings and configure logging (stderr only; stdout is the protocol stream)
2. Build the forecast client; a missing GOOGLE_API_KEY is fatal here
3. Register tools and freeze the registry
4. Serve one client connection on stdin/stdout until EOF
"""

import argparse
import asyncio
import sys
from typing import Optional, Sequence

import structlog

from . import version
from .core.config import Settings, get_settings
from .core.logging import setup_logging
from .forecast import ForecastClient
from .mcp.errors import ConfigurationError, MCPError
from .mcp.protocol import Implementation
from .mcp.registry import ToolRegistry
from .mcp.session import ServerSession
from .mcp.tools.weather import WEATHER_TOOL, WeatherHandler
from .mcp.transport import Transport, open_stdio_transport

logger = structlog.get_logger(__name__)

INSTRUCTIONS = (
    "Use the weather tool for forecasts. Pass city and country; "
    "fromDate and toDate are optional YYYY-MM-DD dates."
)


def build_registry(forecaster: ForecastClient) -> ToolRegistry:
    """Register every built-in tool and freeze the registry."""
    registry = ToolRegistry()
    registry.register(WEATHER_TOOL, WeatherHandler(forecaster))
    registry.freeze()
    return registry


def create_session(transport: Transport, registry: ToolRegistry, settings: Settings) -> ServerSession:
    return ServerSession(
        transport,
        registry,
        Implementation(name=settings.server_name, version=settings.server_version),
        call_timeout=settings.tool_call_timeout_s,
        instructions=INSTRUCTIONS,
    )


async def serve_stdio(settings: Settings) -> None:
    async with ForecastClient.from_settings(settings) as forecaster:
        registry = build_registry(forecaster)
        transport = await open_stdio_transport()
        await create_session(transport, registry, settings).run()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Weather forecast MCP server (stdio)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {version()}")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(args.log_level or settings.log_level, json_logs=settings.log_json)

    try:
        asyncio.run(serve_stdio(settings))
    except ConfigurationError as exc:
        logger.error("Server startup failed", error=exc.message)
        print(f"weathercast-server: {exc.message}", file=sys.stderr)
        return 1
    except MCPError as exc:
        logger.error("Server stopped", code=exc.kind, error=exc.message)
        print(f"weathercast-server: {exc.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
