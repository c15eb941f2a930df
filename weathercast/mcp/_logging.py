"""Logger factory shared by the MCP modules."""

from __future__ import annotations

from typing import Any

import structlog


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name or "weathercast.mcp")
