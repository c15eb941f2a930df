"""Model Context Protocol (MCP) core for weathercast."""

from .base import FunctionHandler, Handler
from .dispatcher import Dispatcher
from .errors import (
    ConfigurationError,
    DuplicateTool,
    HandlerError,
    InvalidArgument,
    MCPError,
    MethodNotFound,
    NotReady,
    ProtocolViolation,
    TransportError,
    UnknownTool,
    VersionUnsupported,
)
from .protocol import (
    CallRequest,
    CallResult,
    Capabilities,
    ContentBlock,
    Implementation,
    ParameterSpec,
    ParameterType,
    ToolDescriptor,
    ToolError,
)
from .registry import RegisteredTool, ToolRegistry
from .session import ClientSession, Connection, ConnectionState, ServerSession

__all__ = [
    "CallRequest",
    "CallResult",
    "Capabilities",
    "ClientSession",
    "ConfigurationError",
    "Connection",
    "ConnectionState",
    "ContentBlock",
    "Dispatcher",
    "DuplicateTool",
    "FunctionHandler",
    "Handler",
    "HandlerError",
    "Implementation",
    "InvalidArgument",
    "MCPError",
    "MethodNotFound",
    "NotReady",
    "ParameterSpec",
    "ParameterType",
    "ProtocolViolation",
    "RegisteredTool",
    "ServerSession",
    "ToolDescriptor",
    "ToolError",
    "ToolRegistry",
    "TransportError",
    "UnknownTool",
    "VersionUnsupported",
]
