"""In-memory tool registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from .base import Handler
from .errors import DuplicateTool, UnknownTool
from .protocol import ToolDescriptor
from ._logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RegisteredTool:
    descriptor: ToolDescriptor
    handler: Handler


class ToolRegistry:
    """Maps tool names to descriptors and handlers.

    Tools are registered once at startup; ``freeze()`` then makes the registry
    read-only so sessions can share it without locking.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, RegisteredTool] = {}
        self._frozen = False

    def register(self, descriptor: ToolDescriptor, handler: Handler) -> None:
        """Register a tool implementation."""
        if self._frozen:
            raise RuntimeError("Tool registry is frozen")
        if descriptor.name in self._tools:
            raise DuplicateTool(descriptor.name)
        self._tools[descriptor.name] = RegisteredTool(descriptor, handler)
        logger.info(
            "Registered MCP tool",
            tool=descriptor.name,
            required=sorted(descriptor.required),
            optional=sorted(descriptor.optional),
        )

    def lookup(self, name: str) -> RegisteredTool:
        """Return the registered tool or raise UnknownTool."""
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownTool(name) from None

    def descriptors(self) -> List[ToolDescriptor]:
        """Return descriptors in registration order."""
        return [entry.descriptor for entry in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
