"""Tests for the handshake state machine and client/server sessions."""

import asyncio

import pytest
import pytest_asyncio

from weathercast.mcp.base import FunctionHandler
from weathercast.mcp.errors import (
    MethodNotFound,
    NotReady,
    ProtocolViolation,
    TransportError,
    VersionUnsupported,
)
from weathercast.mcp.protocol import Capabilities, Implementation
from weathercast.mcp.session import ClientSession, Connection, ConnectionState, ServerSession
from weathercast.mcp.tools.weather import WEATHER_TOOL, WeatherHandler
from weathercast.mcp.transport import memory_transport_pair

pytestmark = [pytest.mark.mcp, pytest.mark.unit]

SERVER_INFO = Implementation(name="Weather Forecast", version="1.0.0")
CLIENT_INFO = Implementation(name="weather-client", version="v1.0.0")


class TestConnection:
    """State machine transitions in isolation."""

    def test_happy_path(self):
        connection = Connection(role="client")
        assert connection.state is ConnectionState.DISCONNECTED
        connection.start()
        assert connection.state is ConnectionState.CONNECTING
        connection.begin_initialize()
        assert connection.state is ConnectionState.INITIALIZING
        connection.complete_initialize("2025-03-26", frozenset({"tools"}))
        assert connection.ready
        assert connection.protocol_version == "2025-03-26"
        connection.close()
        assert connection.closed

    def test_second_initialize_leaves_ready(self):
        connection = Connection(role="server")
        connection.start()
        connection.begin_initialize()
        connection.complete_initialize("2025-03-26")

        with pytest.raises(ProtocolViolation):
            connection.begin_initialize()
        assert connection.state is ConnectionState.READY

    def test_initialize_while_initializing(self):
        connection = Connection(role="server")
        connection.start()
        connection.begin_initialize()
        with pytest.raises(ProtocolViolation):
            connection.begin_initialize()
        assert connection.state is ConnectionState.INITIALIZING

    def test_initialize_before_start(self):
        with pytest.raises(ProtocolViolation):
            Connection(role="client").begin_initialize()

    @pytest.mark.parametrize("steps", [0, 1, 2])
    def test_require_ready_before_handshake(self, steps):
        connection = Connection(role="server")
        for step in [connection.start, connection.begin_initialize][:steps]:
            step()
        with pytest.raises(NotReady):
            connection.require_ready()

    def test_closed_rejects_everything(self):
        connection = Connection(role="client")
        connection.start()
        connection.close()
        with pytest.raises(NotReady):
            connection.require_ready()
        with pytest.raises(NotReady):
            connection.begin_initialize()

    def test_fail_closes(self):
        connection = Connection(role="client")
        connection.start()
        connection.begin_initialize()
        connection.fail()
        assert connection.closed


@pytest_asyncio.fixture
async def served(registry, recording_handler):
    """A running ServerSession plus the raw client end of its transport."""
    registry.register(WEATHER_TOOL, recording_handler)
    registry.freeze()
    client_end, server_end = memory_transport_pair()
    server = ServerSession(server_end, registry, SERVER_INFO, call_timeout=1.0)
    task = asyncio.create_task(server.run())
    yield server, client_end
    await client_end.close()
    await asyncio.wait_for(task, timeout=1)


async def _exchange(transport, message):
    await transport.send(message)
    return await asyncio.wait_for(transport.receive(), timeout=1)


def _initialize(request_id=1, version="2025-03-26"):
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": version,
            "capabilities": {},
            "clientInfo": {"name": "raw", "version": "0"},
        },
    }


class TestServerSession:
    """Server behaviour driven with raw JSON-RPC messages."""

    @pytest.mark.asyncio
    async def test_initialize_reports_server_info(self, served):
        server, wire = served
        reply = await _exchange(wire, _initialize())

        assert reply["id"] == 1
        assert reply["result"]["protocolVersion"] == "2025-03-26"
        assert reply["result"]["serverInfo"] == {"name": "Weather Forecast", "version": "1.0.0"}
        assert "tools" in reply["result"]["capabilities"]
        assert server.connection.ready
        assert server.client_info.name == "raw"

    @pytest.mark.asyncio
    async def test_older_supported_version_is_echoed(self, served):
        _, wire = served
        reply = await _exchange(wire, _initialize(version="2024-11-05"))
        assert reply["result"]["protocolVersion"] == "2024-11-05"

    @pytest.mark.asyncio
    async def test_second_initialize_is_protocol_violation(self, served):
        server, wire = served
        await _exchange(wire, _initialize(1))
        reply = await _exchange(wire, _initialize(2))

        assert reply["id"] == 2
        assert reply["error"]["code"] == -32600
        assert reply["error"]["data"]["kind"] == "protocol_violation"
        assert server.connection.state is ConnectionState.READY

    @pytest.mark.asyncio
    async def test_unsupported_version_closes_connection(self, served):
        server, wire = served
        reply = await _exchange(wire, _initialize(version="0.4.0"))

        assert reply["error"]["data"]["kind"] == "version_unsupported"
        assert reply["error"]["data"]["details"]["requested"] == "0.4.0"
        assert await asyncio.wait_for(wire.receive(), timeout=1) is None
        assert server.connection.closed

    @pytest.mark.asyncio
    async def test_malformed_initialize_can_be_retried(self, served):
        server, wire = served
        reply = await _exchange(wire, {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})
        assert reply["error"]["code"] == -32602
        assert server.connection.state is ConnectionState.CONNECTING

        reply = await _exchange(wire, _initialize(2))
        assert "result" in reply

    @pytest.mark.asyncio
    async def test_call_before_initialize_is_not_ready(self, served, recording_handler):
        _, wire = served
        reply = await _exchange(
            wire,
            {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": "weather", "arguments": {}}},
        )
        assert reply["error"]["code"] == -32002
        assert reply["error"]["data"]["kind"] == "not_ready"
        assert recording_handler.calls == []

    @pytest.mark.asyncio
    async def test_ping_works_before_initialize(self, served):
        _, wire = served
        reply = await _exchange(wire, {"jsonrpc": "2.0", "id": "p", "method": "ping"})
        assert reply == {"jsonrpc": "2.0", "id": "p", "result": {}}

    @pytest.mark.asyncio
    async def test_unknown_method(self, served):
        _, wire = served
        reply = await _exchange(wire, {"jsonrpc": "2.0", "id": 9, "method": "resources/list"})
        assert reply["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_invalid_call_params(self, served):
        _, wire = served
        await _exchange(wire, _initialize())
        reply = await _exchange(wire, {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {}})
        assert reply["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_invalid_envelope(self, served):
        _, wire = served
        reply = await _exchange(wire, {"jsonrpc": "1.0", "id": 4, "method": "ping"})
        assert reply["id"] == 4
        assert reply["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_envelope_without_id_or_method(self, served):
        server, wire = served
        reply = await _exchange(wire, {"jsonrpc": "2.0"})
        assert reply["id"] is None
        assert reply["error"]["code"] == -32600
        assert not server.connection.closed

    @pytest.mark.asyncio
    async def test_validation_error_is_a_result_not_a_crash(self, served):
        server, wire = served
        await _exchange(wire, _initialize())
        reply = await _exchange(
            wire,
            {
                "jsonrpc": "2.0",
                "id": 2,
                "method": "tools/call",
                "params": {"name": "weather", "arguments": {"city": "Warsaw"}},
            },
        )
        assert reply["result"]["isError"] is True
        assert reply["result"]["_meta"]["error"]["parameter"] == "country"
        assert server.connection.ready


class TestClientSession:
    """Client and server talking over an in-memory transport."""

    @pytest_asyncio.fixture
    async def pair(self, registry, fake_forecaster):
        registry.register(WEATHER_TOOL, WeatherHandler(fake_forecaster))
        registry.freeze()
        client_end, server_end = memory_transport_pair()
        server = ServerSession(server_end, registry, SERVER_INFO, call_timeout=1.0)
        task = asyncio.create_task(server.run())
        client = ClientSession(client_end, CLIENT_INFO, capabilities=Capabilities(tools={}), request_timeout=1.0)
        await client.start()
        yield client, server
        await client.close()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_warsaw_forecast(self, pair, fake_forecaster):
        client, server = pair
        result = await client.initialize()
        assert result.server_info == SERVER_INFO
        assert client.connection.ready
        assert client.connection.features == {"tools"}

        call = await client.call_tool(
            "weather",
            {"city": "Warsaw", "country": "Poland", "fromDate": "2025-05-02", "toDate": "2025-05-15"},
        )
        assert call.is_error is False
        assert call.texts() == [fake_forecaster.text]
        city, country, from_date, to_date = fake_forecaster.requests[0]
        assert (city, country) == ("Warsaw", "Poland")
        assert (from_date.isoformat(), to_date.isoformat()) == ("2025-05-02", "2025-05-15")

    @pytest.mark.asyncio
    async def test_list_tools_round_trip(self, pair):
        client, _ = pair
        await client.initialize()
        tools = await client.list_tools()
        assert tools == [WEATHER_TOOL]

    @pytest.mark.asyncio
    async def test_call_before_initialize(self, pair):
        client, _ = pair
        with pytest.raises(NotReady):
            await client.call_tool("weather", {"city": "Warsaw", "country": "Poland"})

    @pytest.mark.asyncio
    async def test_double_initialize(self, pair):
        client, _ = pair
        await client.initialize()
        with pytest.raises(ProtocolViolation):
            await client.initialize()
        assert client.connection.state is ConnectionState.READY

    @pytest.mark.asyncio
    async def test_invalid_argument_result(self, pair):
        client, _ = pair
        await client.initialize()
        result = await client.call_tool("weather", {"city": "Warsaw", "country": "Poland", "fromDate": "15/05/2025"})
        assert result.is_error is True
        assert result.error.parameter == "fromDate"

    @pytest.mark.asyncio
    async def test_ping(self, pair):
        client, _ = pair
        await client.ping()

    @pytest.mark.asyncio
    async def test_closed_session_rejects_requests(self, pair):
        client, _ = pair
        await client.initialize()
        await client.close()
        with pytest.raises(NotReady):
            await client.call_tool("weather", {"city": "Warsaw", "country": "Poland"})


class TestClientHandshakeFailures:
    @pytest.mark.asyncio
    async def test_version_rejected_by_server(self, registry):
        registry.freeze()
        client_end, server_end = memory_transport_pair()
        server = ServerSession(server_end, registry, SERVER_INFO)
        task = asyncio.create_task(server.run())
        client = ClientSession(client_end, CLIENT_INFO, protocol_version="0.4.0", request_timeout=1.0)
        await client.start()

        with pytest.raises(VersionUnsupported) as exc_info:
            await client.initialize()

        assert exc_info.value.requested == "0.4.0"
        assert client.connection.closed
        await asyncio.wait_for(task, timeout=1)
        assert server.connection.closed

    @pytest.mark.asyncio
    async def test_server_gone_fails_pending_request(self):
        client_end, server_end = memory_transport_pair()
        client = ClientSession(client_end, CLIENT_INFO, request_timeout=1.0)
        await client.start()
        await server_end.close()

        with pytest.raises(TransportError):
            await client.initialize()
        assert client.connection.closed

    @pytest.mark.asyncio
    async def test_silent_server_times_out(self):
        client_end, _server_end = memory_transport_pair()
        client = ClientSession(client_end, CLIENT_INFO, request_timeout=0.05)
        await client.start()

        with pytest.raises(TransportError, match="No response"):
            await client.initialize()
        assert client.connection.closed


async def _scripted_server(transport, results):
    """Answer each request in turn with the next canned result."""
    for result in results:
        request = await transport.receive()
        if request is None:
            return
        await transport.send({"jsonrpc": "2.0", "id": request["id"], "result": result})
        if request["method"] == "initialize":
            await transport.receive()


VALID_INITIALIZE = {
    "protocolVersion": "2025-03-26",
    "capabilities": {"tools": {}},
    "serverInfo": {"name": "scripted", "version": "0"},
}


class TestMalformedServerReplies:
    @pytest.mark.asyncio
    async def test_malformed_initialize_result(self):
        client_end, server_end = memory_transport_pair()
        server = asyncio.create_task(_scripted_server(server_end, [{}]))
        client = ClientSession(client_end, CLIENT_INFO, request_timeout=1.0)
        await client.start()

        with pytest.raises(ProtocolViolation, match="Malformed initialize result"):
            await client.initialize()
        assert client.connection.closed
        await asyncio.wait_for(server, timeout=1)

    @pytest.mark.asyncio
    async def test_unsupported_tool_listing(self):
        listing = {"tools": [{"name": "bulk", "inputSchema": {"type": "object", "properties": {"items": {"type": "array"}}}}]}
        client_end, server_end = memory_transport_pair()
        server = asyncio.create_task(_scripted_server(server_end, [VALID_INITIALIZE, listing]))

        async with ClientSession(client_end, CLIENT_INFO, request_timeout=1.0) as client:
            await client.initialize()
            with pytest.raises(ProtocolViolation, match="Malformed tools/list result") as exc_info:
                await client.list_tools()
        assert exc_info.value.details == {"method": "tools/list"}
        await asyncio.wait_for(server, timeout=1)

    @pytest.mark.asyncio
    async def test_integer_parameters_are_listed(self):
        listing = {"tools": [{"name": "count", "inputSchema": {"type": "object", "properties": {"n": {"type": "integer"}}}}]}
        client_end, server_end = memory_transport_pair()
        server = asyncio.create_task(_scripted_server(server_end, [VALID_INITIALIZE, listing]))

        async with ClientSession(client_end, CLIENT_INFO, request_timeout=1.0) as client:
            await client.initialize()
            tools = await client.list_tools()
        assert [tool.name for tool in tools] == ["count"]
        await asyncio.wait_for(server, timeout=1)

    @pytest.mark.asyncio
    async def test_malformed_call_result(self):
        client_end, server_end = memory_transport_pair()
        server = asyncio.create_task(_scripted_server(server_end, [VALID_INITIALIZE, {"content": [{"type": 5}]}]))

        async with ClientSession(client_end, CLIENT_INFO, request_timeout=1.0) as client:
            await client.initialize()
            with pytest.raises(ProtocolViolation, match="Malformed tools/call result"):
                await client.call_tool("weather", {"city": "Warsaw", "country": "Poland"})
        await asyncio.wait_for(server, timeout=1)


class TestCallTimeout:
    @pytest.mark.asyncio
    async def test_stalled_handler_becomes_error_result(self, registry, echo_tool):
        async def stall(arguments):
            await asyncio.sleep(10)

        registry.register(echo_tool, FunctionHandler(stall))
        client_end, server_end = memory_transport_pair()
        server = ServerSession(server_end, registry, SERVER_INFO, call_timeout=0.05)
        task = asyncio.create_task(server.run())

        async with ClientSession(client_end, CLIENT_INFO, request_timeout=1.0) as client:
            await client.initialize()
            result = await client.call_tool("echo", {"message": "hi"})
            assert result.is_error is True
            assert result.error.code == "handler_error"
            assert result.error.retryable is True
            assert "timed out" in result.error.message
            with pytest.raises(MethodNotFound):
                await client._request("prompts/list")

        await asyncio.wait_for(task, timeout=1)
