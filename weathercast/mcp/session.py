"""Handshake state machine and the two ends of an MCP connection."""

from __future__ import annotations

import asyncio
import itertools
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .dispatcher import Dispatcher
from .errors import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    PARSE_ERROR,
    HandlerError,
    MCPError,
    MethodNotFound,
    NotReady,
    ProtocolViolation,
    TransportError,
    VersionUnsupported,
    error_from_wire,
)
from .protocol import (
    INITIALIZE,
    INITIALIZED,
    LATEST_PROTOCOL_VERSION,
    PING,
    SUPPORTED_PROTOCOL_VERSIONS,
    TOOLS_CALL,
    TOOLS_LIST,
    CallRequest,
    CallResult,
    Capabilities,
    ErrorObject,
    Implementation,
    InitializeParams,
    InitializeResult,
    JSONRPCMessage,
    RequestId,
    ToolDescriptor,
)
from .registry import ToolRegistry
from .transport import Transport
from ._logging import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


class Connection:
    """Tracks the handshake of a single connection.

    DISCONNECTED -> CONNECTING -> INITIALIZING -> READY -> CLOSED.
    Only one handshake may ever be in flight; rejected transitions leave the
    state untouched.
    """

    def __init__(self, role: str) -> None:
        self.role = role
        self.state = ConnectionState.DISCONNECTED
        self.protocol_version: Optional[str] = None
        self.features: FrozenSet[str] = frozenset()

    def start(self) -> None:
        self._expect(ConnectionState.DISCONNECTED, action="start")
        self._move(ConnectionState.CONNECTING)

    def begin_initialize(self) -> None:
        if self.state in (ConnectionState.INITIALIZING, ConnectionState.READY):
            raise ProtocolViolation(
                f"Connection is already {self.state.value}; only one initialize is allowed",
                details={"state": self.state.value},
            )
        if self.state is ConnectionState.CLOSED:
            raise NotReady("Connection is closed")
        self._expect(ConnectionState.CONNECTING, action="initialize")
        self._move(ConnectionState.INITIALIZING)

    def complete_initialize(self, protocol_version: str, features: FrozenSet[str] = frozenset()) -> None:
        self._expect(ConnectionState.INITIALIZING, action="complete initialize")
        self.protocol_version = protocol_version
        self.features = features
        self._move(ConnectionState.READY)

    def abort_initialize(self) -> None:
        """Return to CONNECTING after malformed initialize params."""
        self._expect(ConnectionState.INITIALIZING, action="abort initialize")
        self._move(ConnectionState.CONNECTING)

    def fail(self) -> None:
        self._move(ConnectionState.CLOSED)

    def close(self) -> None:
        if self.state is not ConnectionState.CLOSED:
            self._move(ConnectionState.CLOSED)

    def require_ready(self) -> None:
        if self.state is ConnectionState.CLOSED:
            raise NotReady("Connection is closed")
        if self.state is not ConnectionState.READY:
            raise NotReady(
                f"Connection is {self.state.value}; complete initialize first",
                details={"state": self.state.value},
            )

    @property
    def ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def _expect(self, expected: ConnectionState, *, action: str) -> None:
        if self.state is not expected:
            raise ProtocolViolation(
                f"Cannot {action} while {self.state.value}",
                details={"state": self.state.value},
            )

    def _move(self, new_state: ConnectionState) -> None:
        logger.debug(
            "Connection state change",
            role=self.role,
            previous=self.state.value,
            state=new_state.value,
        )
        self.state = new_state


class ServerSession:
    """Serves one connection: handshake, tool discovery and tool calls."""

    def __init__(
        self,
        transport: Transport,
        registry: ToolRegistry,
        server_info: Implementation,
        *,
        capabilities: Optional[Capabilities] = None,
        supported_versions: Sequence[str] = SUPPORTED_PROTOCOL_VERSIONS,
        call_timeout: Optional[float] = None,
        instructions: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.registry = registry
        self.dispatcher = Dispatcher(registry)
        self.server_info = server_info
        self.capabilities = capabilities or Capabilities(tools={"listChanged": False})
        self.supported_versions = tuple(supported_versions)
        self.call_timeout = call_timeout
        self.instructions = instructions
        self.connection = Connection(role="server")
        self.client_info: Optional[Implementation] = None

    async def run(self) -> None:
        """Process messages until the peer disconnects or the connection closes."""
        self.connection.start()
        logger.info("MCP server session started", server=self.server_info.name)
        try:
            while not self.connection.closed:
                try:
                    raw = await self.transport.receive()
                except ProtocolViolation as exc:
                    logger.warning("Undecodable message", error=exc.message)
                    await self._send(JSONRPCMessage.failure(None, ErrorObject(code=PARSE_ERROR, message=exc.message)))
                    continue
                if raw is None:
                    logger.info("Client closed the connection")
                    break
                await self.handle_message(raw)
        finally:
            self.connection.close()
            await self.transport.close()
            logger.info("MCP server session closed", server=self.server_info.name)

    async def handle_message(self, raw: Mapping[str, Any]) -> None:
        try:
            message = JSONRPCMessage.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Invalid JSON-RPC message", error=str(exc))
            await self._send(
                JSONRPCMessage.failure(
                    raw.get("id") if isinstance(raw.get("id"), (int, str)) else None,
                    ErrorObject(code=INVALID_REQUEST, message="Invalid request"),
                )
            )
            return

        if message.is_notification:
            self._handle_notification(message)
            return
        if message.is_response:
            logger.debug("Ignoring unsolicited response", id=message.id)
            return
        if not message.is_request:
            logger.warning("Message is neither a request nor a response")
            await self._send(JSONRPCMessage.failure(None, ErrorObject(code=INVALID_REQUEST, message="Invalid request")))
            return

        try:
            result = await self._handle_request(message.method or "", message.params or {})
        except VersionUnsupported as exc:
            logger.warning(
                "Rejected protocol version",
                requested=exc.requested,
                supported=list(exc.supported),
            )
            await self._send(JSONRPCMessage.failure(message.id, exc.to_jsonrpc()))
            self.connection.fail()
            return
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            logger.warning("Invalid params", method=message.method, errors=len(errors))
            await self._send(
                JSONRPCMessage.failure(
                    message.id,
                    ErrorObject(code=INVALID_PARAMS, message="Invalid params", data={"errors": errors}),
                )
            )
            return
        except MCPError as exc:
            logger.warning("Request rejected", method=message.method, code=exc.kind, error=exc.message)
            await self._send(JSONRPCMessage.failure(message.id, exc.to_jsonrpc()))
            return

        await self._send(JSONRPCMessage.response(message.id, result))

    async def _handle_request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if method == INITIALIZE:
            return self._initialize(params)
        if method == PING:
            return {}
        if method == TOOLS_LIST:
            self.connection.require_ready()
            return {"tools": [descriptor.to_wire() for descriptor in self.registry.descriptors()]}
        if method == TOOLS_CALL:
            self.connection.require_ready()
            request = CallRequest.model_validate(params)
            result = await self._call_tool(request)
            return result.to_wire()
        raise MethodNotFound(f"Method not found: {method}")

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.connection.begin_initialize()
        try:
            request = InitializeParams.model_validate(params)
        except ValidationError:
            self.connection.abort_initialize()
            raise
        if request.protocol_version not in self.supported_versions:
            raise VersionUnsupported(request.protocol_version, self.supported_versions)

        self.client_info = request.client_info
        features = self.capabilities.negotiate(request.capabilities)
        self.connection.complete_initialize(request.protocol_version, features)
        logger.info(
            "Client initialized",
            client=request.client_info.name,
            client_version=request.client_info.version,
            protocol_version=request.protocol_version,
        )
        return InitializeResult(
            protocol_version=request.protocol_version,
            capabilities=self.capabilities,
            server_info=self.server_info,
            instructions=self.instructions,
        ).to_wire()

    async def _call_tool(self, request: CallRequest) -> CallResult:
        if self.call_timeout is None:
            return await self.dispatcher.dispatch(request)
        try:
            return await asyncio.wait_for(self.dispatcher.dispatch(request), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool timed out", tool=request.name, timeout_s=self.call_timeout)
            error = HandlerError(
                f"{request.name} timed out after {self.call_timeout:g}s",
                retryable=True,
                details={"timeout_s": self.call_timeout},
            )
            return CallResult.failure(error.to_tool_error())

    def _handle_notification(self, message: JSONRPCMessage) -> None:
        if message.method == INITIALIZED:
            logger.debug("Client confirmed initialization")
        else:
            logger.debug("Ignoring notification", method=message.method)

    async def _send(self, message: JSONRPCMessage) -> None:
        await self.transport.send(message.to_wire())


class ClientSession:
    """Client end: performs the handshake and issues correlated requests."""

    def __init__(
        self,
        transport: Transport,
        client_info: Implementation,
        *,
        capabilities: Optional[Capabilities] = None,
        protocol_version: str = LATEST_PROTOCOL_VERSION,
        supported_versions: Sequence[str] = SUPPORTED_PROTOCOL_VERSIONS,
        request_timeout: Optional[float] = None,
    ) -> None:
        self.transport = transport
        self.client_info = client_info
        self.capabilities = capabilities or Capabilities()
        self.protocol_version = protocol_version
        self.supported_versions = tuple(supported_versions)
        self.request_timeout = request_timeout
        self.connection = Connection(role="client")
        self.server_info: Optional[Implementation] = None
        self.server_capabilities: Optional[Capabilities] = None
        self._ids = itertools.count(1)
        self._pending: Dict[RequestId, "asyncio.Future[JSONRPCMessage]"] = {}
        self._reader: Optional["asyncio.Task[None]"] = None

    async def __aenter__(self) -> "ClientSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> None:
        self.connection.start()
        self._reader = asyncio.create_task(self._read_loop())

    async def initialize(self) -> InitializeResult:
        self.connection.begin_initialize()
        params = InitializeParams(
            protocol_version=self.protocol_version,
            capabilities=self.capabilities,
            client_info=self.client_info,
        )
        try:
            response = await self._request(INITIALIZE, params.to_wire())
            try:
                result = InitializeResult.model_validate(response)
            except ValidationError as exc:
                raise _malformed(INITIALIZE, exc) from exc
            if result.protocol_version not in self.supported_versions:
                raise VersionUnsupported(result.protocol_version, self.supported_versions)
        except MCPError:
            self.connection.fail()
            await self._shutdown()
            raise

        self.server_info = result.server_info
        self.server_capabilities = result.capabilities
        self.connection.complete_initialize(
            result.protocol_version,
            self.capabilities.negotiate(result.capabilities),
        )
        await self._notify(INITIALIZED)
        logger.info(
            "Connected to MCP server",
            server=result.server_info.name,
            server_version=result.server_info.version,
            protocol_version=result.protocol_version,
        )
        return result

    async def ping(self) -> None:
        await self._request(PING)

    async def list_tools(self) -> List[ToolDescriptor]:
        self.connection.require_ready()
        response = await self._request(TOOLS_LIST)
        try:
            return [ToolDescriptor.from_wire(tool) for tool in response.get("tools") or []]
        except (AttributeError, TypeError, ValueError) as exc:
            raise _malformed(TOOLS_LIST, exc) from exc

    async def call_tool(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> CallResult:
        self.connection.require_ready()
        request = CallRequest(name=name, arguments=dict(arguments or {}))
        response = await self._request(TOOLS_CALL, request.model_dump())
        try:
            return CallResult.from_wire(response)
        except (AttributeError, TypeError, ValueError) as exc:
            raise _malformed(TOOLS_CALL, exc) from exc

    async def close(self) -> None:
        self.connection.close()
        await self._shutdown()

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self.connection.closed:
            raise NotReady("Connection is closed")
        if self._reader is None or self._reader.done():
            raise TransportError("Connection to the server is not open")
        request_id = next(self._ids)
        future: "asyncio.Future[JSONRPCMessage]" = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.transport.send(JSONRPCMessage.request(request_id, method, params).to_wire())
            if self.request_timeout is None:
                reply = await future
            else:
                reply = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"No response to {method} within {self.request_timeout:g}s",
                retryable=True,
            ) from exc
        finally:
            self._pending.pop(request_id, None)

        if reply.error is not None:
            raise error_from_wire(reply.error)
        return reply.result or {}

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        await self.transport.send(JSONRPCMessage.notification(method, params).to_wire())

    async def _read_loop(self) -> None:
        reason = "Server closed the connection"
        try:
            while True:
                try:
                    raw = await self.transport.receive()
                except ProtocolViolation as exc:
                    logger.warning("Undecodable message from server", error=exc.message)
                    continue
                if raw is None:
                    break
                try:
                    message = JSONRPCMessage.model_validate(raw)
                except ValidationError as exc:
                    logger.warning("Invalid JSON-RPC message from server", error=str(exc))
                    continue
                if not message.is_response:
                    logger.debug("Ignoring server-initiated message", method=message.method)
                    continue
                future = self._pending.get(message.id) if message.id is not None else None
                if future is None or future.done():
                    logger.debug("Response for unknown request", id=message.id)
                    continue
                future.set_result(message)
        except TransportError as exc:
            reason = exc.message
        finally:
            self._fail_pending(TransportError(reason))

    def _fail_pending(self, error: TransportError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _shutdown(self) -> None:
        await self.transport.close()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._fail_pending(TransportError("Connection closed"))


def _malformed(method: str, exc: Exception) -> ProtocolViolation:
    logger.warning("Malformed result from server", method=method, error=str(exc))
    return ProtocolViolation(f"Malformed {method} result from server: {exc}", details={"method": method})
