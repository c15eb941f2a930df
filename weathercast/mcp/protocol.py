"""Shared Pydantic contracts for MCP."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

import jsonschema
from pydantic import BaseModel, ConfigDict, Field, field_validator

JSONRPC_VERSION = "2.0"

LATEST_PROTOCOL_VERSION = "2025-03-26"
SUPPORTED_PROTOCOL_VERSIONS: Tuple[str, ...] = ("2024-11-05", LATEST_PROTOCOL_VERSION)

INITIALIZE = "initialize"
INITIALIZED = "notifications/initialized"
PING = "ping"
TOOLS_LIST = "tools/list"
TOOLS_CALL = "tools/call"

# A validated tool argument. ``None`` marks an optional parameter left unset.
ArgumentValue = Union[str, int, float, bool, None]
ToolArguments = Mapping[str, ArgumentValue]
RequestId = Union[int, str]


class _WireModel(BaseModel):
    """Models whose wire names are camelCase."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Implementation(_WireModel):
    """Identity of a peer (client or server)."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str


class Capabilities(_WireModel):
    """Feature flags a peer declares; each key present is a supported feature."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    experimental: Optional[Dict[str, Any]] = None
    logging: Optional[Dict[str, Any]] = None
    prompts: Optional[Dict[str, Any]] = None
    resources: Optional[Dict[str, Any]] = None
    tools: Optional[Dict[str, Any]] = None
    roots: Optional[Dict[str, Any]] = None
    sampling: Optional[Dict[str, Any]] = None

    @property
    def flags(self) -> FrozenSet[str]:
        return frozenset(self.to_wire())

    def negotiate(self, other: "Capabilities") -> FrozenSet[str]:
        """Return the features both peers declared."""
        return self.flags & other.flags


class ParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"

    @classmethod
    def from_schema(cls, value: Any) -> "ParameterType":
        """Map a JSON schema ``type`` onto the supported parameter types."""
        if isinstance(value, (list, tuple)):
            candidates = [item for item in value if item != "null"]
            value = candidates[0] if len(candidates) == 1 else None
        if value == "integer":
            return cls.NUMBER
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"unsupported parameter type {value!r}") from None


class ParameterSpec(BaseModel):
    """One named tool parameter."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    description: str = ""
    format: Optional[str] = Field(None, description="Value format, e.g. 'date' for YYYY-MM-DD")

    def json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type.value}
        if self.description:
            schema["description"] = self.description
        if self.format:
            schema["format"] = self.format
        return schema


class ToolDescriptor(BaseModel):
    """Public metadata describing a tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Tuple[ParameterSpec, ...] = ()

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("tool name must not be empty")
        return normalized

    @field_validator("parameters")
    @classmethod
    def _unique_parameters(cls, value: Tuple[ParameterSpec, ...]) -> Tuple[ParameterSpec, ...]:
        names = [param.name for param in value]
        if len(names) != len(set(names)):
            raise ValueError("parameter names must be unique")
        return value

    @property
    def required(self) -> FrozenSet[str]:
        return frozenset(param.name for param in self.parameters if param.required)

    @property
    def optional(self) -> FrozenSet[str]:
        return frozenset(param.name for param in self.parameters if not param.required)

    def input_schema(self) -> Dict[str, Any]:
        """JSON schema for the tool's arguments object."""
        schema: Dict[str, Any] = {
            "type": "object",
            "properties": {param.name: param.json_schema() for param in self.parameters},
        }
        required = [param.name for param in self.parameters if param.required]
        if required:
            schema["required"] = required
        return schema

    def to_wire(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema(),
        }

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "ToolDescriptor":
        """Parse a tool listing entry as sent by a peer.

        Raises ``ValueError`` for entries that cannot be represented as a
        ``ToolDescriptor``.
        """
        if not isinstance(data.get("name"), str):
            raise ValueError("tool entry has no name")
        schema = data.get("inputSchema") or {"type": "object"}
        try:
            jsonschema.Draft7Validator.check_schema(schema)
        except jsonschema.SchemaError as exc:
            raise ValueError(f"invalid inputSchema for {data['name']!r}: {exc.message}") from exc
        required = set(schema.get("required", ()))
        parameters = []
        for name, prop in (schema.get("properties") or {}).items():
            try:
                param_type = ParameterType.from_schema(prop.get("type", ParameterType.STRING.value))
            except ValueError as exc:
                raise ValueError(f"parameter {name!r} of {data['name']!r}: {exc}") from exc
            parameters.append(
                ParameterSpec(
                    name=name,
                    type=param_type,
                    required=name in required,
                    description=prop.get("description", ""),
                    format=prop.get("format"),
                )
            )
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            parameters=tuple(parameters),
        )


class ContentBlock(BaseModel):
    """One unit of a tool result, tagged by kind."""

    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: Optional[str] = None


class ToolError(BaseModel):
    """Structured error carried by a failed call."""

    code: str = Field(..., description="Machine-friendly error code")
    message: str = Field(..., description="Human readable message")
    parameter: Optional[str] = Field(None, description="Offending parameter, for invalid arguments")
    retryable: bool = Field(False, description="Whether the request can be retried safely")
    details: Dict[str, Any] = Field(default_factory=dict, description="Optional contextual metadata")


class CallRequest(BaseModel):
    """Params of a tools/call request."""

    name: str = Field(..., description="Tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Tool specific arguments")

    @field_validator("name")
    @classmethod
    def _normalize_tool(cls, value: str) -> str:
        """Normalize tool names for consistent routing."""
        normalized = value.strip()
        if not normalized:
            raise ValueError("tool name must not be empty")
        return normalized

    @field_validator("arguments", mode="before")
    @classmethod
    def _null_arguments(cls, value: Any) -> Any:
        return {} if value is None else value


class CallResult(BaseModel):
    """Outcome of a tool call."""

    content: List[ContentBlock] = Field(default_factory=list)
    is_error: bool = False
    error: Optional[ToolError] = None

    @classmethod
    def text(cls, text: str) -> "CallResult":
        return cls(content=[ContentBlock(type="text", text=text)])

    @classmethod
    def failure(cls, error: ToolError) -> "CallResult":
        return cls(
            content=[ContentBlock(type="text", text=error.message)],
            is_error=True,
            error=error,
        )

    def texts(self) -> List[str]:
        return [block.text for block in self.content if block.type == "text" and block.text is not None]

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "content": [block.model_dump(exclude_none=True) for block in self.content],
            "isError": self.is_error,
        }
        if self.error is not None:
            payload["_meta"] = {"error": self.error.model_dump(exclude_none=True)}
        return payload

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "CallResult":
        error = (data.get("_meta") or {}).get("error")
        return cls(
            content=[ContentBlock.model_validate(block) for block in data.get("content", [])],
            is_error=bool(data.get("isError", False)),
            error=ToolError.model_validate(error) if error else None,
        )


class InitializeParams(_WireModel):
    protocol_version: str = Field(..., alias="protocolVersion")
    capabilities: Capabilities = Field(default_factory=Capabilities)
    client_info: Implementation = Field(..., alias="clientInfo")


class InitializeResult(_WireModel):
    protocol_version: str = Field(..., alias="protocolVersion")
    capabilities: Capabilities = Field(default_factory=Capabilities)
    server_info: Implementation = Field(..., alias="serverInfo")
    instructions: Optional[str] = None


class ErrorObject(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCMessage(BaseModel):
    """Any JSON-RPC 2.0 message; the populated fields decide its kind."""

    jsonrpc: str = JSONRPC_VERSION
    id: Optional[RequestId] = None
    method: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[ErrorObject] = None

    @field_validator("jsonrpc")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if value != JSONRPC_VERSION:
            raise ValueError(f"jsonrpc must be '{JSONRPC_VERSION}'")
        return value

    @property
    def is_request(self) -> bool:
        return self.method is not None and self.id is not None

    @property
    def is_notification(self) -> bool:
        return self.method is not None and self.id is None

    @property
    def is_response(self) -> bool:
        return self.method is None and (self.id is not None or self.error is not None)

    def to_wire(self) -> Dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        if self.error is not None:
            payload.setdefault("id", None)
        if self.is_response and self.error is None and self.result is None:
            payload["result"] = {}
        return payload

    @classmethod
    def request(cls, request_id: RequestId, method: str, params: Optional[Dict[str, Any]] = None) -> "JSONRPCMessage":
        return cls(id=request_id, method=method, params=params)

    @classmethod
    def notification(cls, method: str, params: Optional[Dict[str, Any]] = None) -> "JSONRPCMessage":
        return cls(method=method, params=params)

    @classmethod
    def response(cls, request_id: RequestId, result: Dict[str, Any]) -> "JSONRPCMessage":
        return cls(id=request_id, result=result)

    @classmethod
    def failure(cls, request_id: Optional[RequestId], error: ErrorObject) -> "JSONRPCMessage":
        return cls(id=request_id, error=error)
