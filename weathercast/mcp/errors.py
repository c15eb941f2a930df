"""Error taxonomy for the MCP core.

Every error carries a stable ``kind`` (used on the wire so the peer can
rebuild the same exception) and the JSON-RPC code it maps to.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

from .protocol import ErrorObject, ToolError

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_NOT_INITIALIZED = -32002


class MCPError(Exception):
    """Base class for protocol, registry and tool failures."""

    kind: str = "internal_error"
    jsonrpc_code: int = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.details = details or {}

    def to_tool_error(self) -> ToolError:
        return ToolError(
            code=self.kind,
            message=self.message,
            retryable=self.retryable,
            details=self.details,
        )

    def to_jsonrpc(self) -> ErrorObject:
        data: Dict[str, Any] = {"kind": self.kind}
        if self.details:
            data["details"] = self.details
        return ErrorObject(code=self.jsonrpc_code, message=self.message, data=data)


class ProtocolViolation(MCPError):
    """Malformed sequencing, e.g. a second initialize on one connection."""

    kind = "protocol_violation"
    jsonrpc_code = INVALID_REQUEST


class VersionUnsupported(MCPError):
    """The peer asked for a protocol version this side cannot speak."""

    kind = "version_unsupported"
    jsonrpc_code = INVALID_PARAMS

    def __init__(self, requested: str, supported: tuple[str, ...] = (), **kwargs: Any) -> None:
        details = kwargs.pop("details", None) or {
            "requested": requested,
            "supported": list(supported),
        }
        super().__init__(
            f"Unsupported protocol version '{requested}'",
            details=details,
            **kwargs,
        )
        self.requested = requested
        self.supported = tuple(details.get("supported", supported))


class NotReady(MCPError):
    """A request arrived before the handshake completed or after close."""

    kind = "not_ready"
    jsonrpc_code = SERVER_NOT_INITIALIZED


class MethodNotFound(MCPError):
    kind = "method_not_found"
    jsonrpc_code = METHOD_NOT_FOUND


class UnknownTool(MCPError):
    kind = "unknown_tool"
    jsonrpc_code = INVALID_PARAMS

    def __init__(self, name: str, **kwargs: Any) -> None:
        kwargs.setdefault("details", {"tool": name})
        super().__init__(f"Tool '{name}' is not registered", **kwargs)
        self.name = name


class DuplicateTool(MCPError):
    kind = "duplicate_tool"
    jsonrpc_code = INTERNAL_ERROR

    def __init__(self, name: str, **kwargs: Any) -> None:
        kwargs.setdefault("details", {"tool": name})
        super().__init__(f"Tool '{name}' is already registered", **kwargs)
        self.name = name


class InvalidArgument(MCPError):
    """A tool argument is missing, mistyped or badly formatted."""

    kind = "invalid_argument"
    jsonrpc_code = INVALID_PARAMS

    def __init__(self, parameter: str, reason: str = "is invalid", **kwargs: Any) -> None:
        kwargs.setdefault("details", {"parameter": parameter})
        super().__init__(f"{parameter}: {reason}", **kwargs)
        self.parameter = parameter
        self.reason = reason

    def to_tool_error(self) -> ToolError:
        error = super().to_tool_error()
        return error.model_copy(update={"parameter": self.parameter})


class HandlerError(MCPError):
    """A tool handler (or a service behind it) failed."""

    kind = "handler_error"
    jsonrpc_code = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause


class TransportError(MCPError):
    """The connection to the peer was lost or stalled."""

    kind = "transport_error"
    jsonrpc_code = INTERNAL_ERROR


class ConfigurationError(MCPError):
    """Process configuration is incomplete, e.g. a missing credential."""

    kind = "configuration_error"
    jsonrpc_code = INTERNAL_ERROR


_ERRORS_BY_KIND: Dict[str, Type[MCPError]] = {
    cls.kind: cls
    for cls in (
        ProtocolViolation,
        VersionUnsupported,
        NotReady,
        MethodNotFound,
        UnknownTool,
        DuplicateTool,
        InvalidArgument,
        HandlerError,
        TransportError,
        ConfigurationError,
    )
}


def error_from_wire(error: ErrorObject) -> MCPError:
    """Rebuild the exception a peer reported in a JSON-RPC error response."""
    data = error.data if isinstance(error.data, dict) else {}
    details = data.get("details") or {}
    cls = _ERRORS_BY_KIND.get(data.get("kind", ""))

    if cls is VersionUnsupported:
        return VersionUnsupported(
            details.get("requested", ""),
            tuple(details.get("supported", ())),
            details=details,
        )
    if cls is InvalidArgument:
        parameter = details.get("parameter", "")
        prefix = f"{parameter}: "
        reason = error.message[len(prefix):] if error.message.startswith(prefix) else error.message
        return InvalidArgument(parameter, reason, details=details)
    if cls is UnknownTool or cls is DuplicateTool:
        return cls(details.get("tool", ""), details=details)
    if cls is not None:
        return cls(error.message, details=details)

    if error.code == METHOD_NOT_FOUND:
        return MethodNotFound(error.message, details=details)
    if error.code == INVALID_REQUEST:
        return ProtocolViolation(error.message, details=details)
    return MCPError(error.message, details={"code": error.code, **details})
