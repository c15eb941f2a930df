"""Base abstractions for MCP tool handlers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Union

from .protocol import CallResult, ToolArguments

HandlerOutput = Union[str, CallResult]


class Handler(ABC):
    """Executes one tool with arguments the dispatcher already validated."""

    @abstractmethod
    async def handle(self, arguments: ToolArguments) -> HandlerOutput:
        """Return the tool's text output or a full CallResult.

        Raise ``InvalidArgument`` for argument combinations the schema cannot
        express, or ``HandlerError`` when a downstream service fails.
        """


class FunctionHandler(Handler):
    """Adapter turning a plain (sync or async) callable into a Handler."""

    def __init__(
        self,
        func: Callable[[ToolArguments], Union[HandlerOutput, Awaitable[HandlerOutput]]],
    ) -> None:
        self.func = func

    async def handle(self, arguments: ToolArguments) -> HandlerOutput:
        result: Any = self.func(arguments)
        if hasattr(result, "__await__"):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__name__', self.func)!r})"
