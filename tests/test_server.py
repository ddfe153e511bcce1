from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from mcp_flow.config import FlowServerSettings
from mcp_flow.errors import AlreadyRunningError
from mcp_flow.events import Message
from mcp_flow.execution import FlowExecutor, ToolHandler
from mcp_flow.registry import ToolDefinition, ToolRegistration
from mcp_flow.server import MCPFlowServer


class EchoHandler(ToolHandler):
    name = "echo_tool"
    description = "Echoes back the input message"
    parameters = {"message": {"type": "string"}}

    def handle(self, params: dict) -> dict:
        return {"echoed": params.get("message", "")}


def rpc(client: TestClient, method: str, params: dict | None = None, request_id=1):
    return client.post("/mcp", json={"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})


@pytest.fixture
def server(registry, events):
    settings = FlowServerSettings(server_name="test-flow", execution_timeout=1, heartbeat_interval=0.01)
    return MCPFlowServer(settings, registry=registry, events=events)


@pytest.fixture
def client(server):
    return TestClient(server.app)


@pytest.fixture
def echo_server(server):
    FlowExecutor(server.bridge).register(EchoHandler())
    server.registry.register(EchoHandler().definition())
    return server


class TestJsonRpc:
    def test_tools_list_empty(self, client):
        response = rpc(client, "tools/list")

        assert response.status_code == 200
        assert response.json() == {"jsonrpc": "2.0", "id": 1, "result": {"tools": []}}

    def test_method_not_found(self, client):
        response = rpc(client, "nonexistent", request_id=2)

        assert response.json() == {
            "jsonrpc": "2.0",
            "id": 2,
            "error": {"code": -32601, "message": "Method not found: nonexistent"},
        }

    def test_initialize(self, client):
        result = rpc(client, "initialize").json()["result"]

        assert result["protocolVersion"] == "2024-11-05"
        assert result["capabilities"] == {"tools": {"listChanged": True}}
        assert result["serverInfo"]["name"] == "test-flow"
        assert result["serverInfo"]["version"] == "1.0.0"

    def test_tools_list_reflects_registry(self, client, registry):
        registry.register(ToolDefinition("weather_tool", "Current weather"))

        tools = rpc(client, "tools/list").json()["result"]["tools"]
        assert [t["name"] for t in tools] == ["weather_tool"]
        assert tools[0]["inputSchema"] == {"type": "object", "properties": {}, "required": []}

    def test_tools_call(self, echo_server, client, recorder):
        response = rpc(client, "tools/call", {"name": "echo_tool", "arguments": {"message": "hi"}})

        assert response.json() == {"jsonrpc": "2.0", "id": 1, "result": {"echoed": "hi"}}
        execute = recorder.payloads("mcp-tool-execute")[0]
        assert execute["toolName"] == "echo_tool"
        assert execute["arguments"] == {"message": "hi"}

    def test_direct_tool_method(self, echo_server, client):
        response = rpc(client, "echo_tool", {"message": "direct"})
        assert response.json()["result"] == {"echoed": "direct"}

    def test_tool_not_found_after_unregister(self, server, client, registry, events):
        registration = ToolRegistration("x_tool", "X", registry=registry, events=events)
        registration.register_tool()
        registration.unregister_tool()

        listed = rpc(client, "tools/list").json()["result"]["tools"]
        response = rpc(client, "tools/call", {"name": "x_tool", "arguments": {}})

        assert listed == []
        assert response.json()["error"] == {"code": -32602, "message": "Tool not found: x_tool"}

    def test_execution_timeout(self, server, client, registry):
        server.bridge.timeout = 0.05
        registry.register(ToolDefinition("silent_tool", "Nobody answers"))

        error = rpc(client, "silent_tool").json()["error"]

        assert error == {"code": -32603, "message": "Tool execution timeout"}
        assert server.bridge.pending_count == 0

    def test_malformed_body(self, client):
        response = client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        body = response.json()
        assert body["id"] is None
        assert body["error"]["code"] == -32700
        assert body["error"]["message"] == "Parse error"

    def test_non_object_body(self, client):
        response = client.post("/mcp", json=[1, 2, 3])

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32600

    def test_internal_error(self, server, client, monkeypatch):
        async def boom(request):
            raise RuntimeError("kaboom")

        monkeypatch.setattr(server, "dispatch", boom)
        response = rpc(client, "tools/list", request_id=7)

        assert response.status_code == 500
        assert response.json() == {
            "jsonrpc": "2.0",
            "id": 7,
            "error": {"code": -32603, "message": "Internal error", "data": "kaboom"},
        }


class TestHttpSurface:
    def test_health(self, client, registry):
        registry.register(ToolDefinition("weather_tool", "Current weather"))

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["server"] == "test-flow"
        assert body["toolCount"] == 1
        assert body["uptime"] >= 0

    def test_cors_preflight(self, client):
        response = client.options("/mcp")

        assert response.status_code == 200
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert "POST" in response.headers["Access-Control-Allow-Methods"]

    def test_cors_headers_on_responses(self, client):
        assert client.get("/health").headers["Access-Control-Allow-Origin"] == "*"

    def test_cors_disabled(self, registry, events):
        server = MCPFlowServer(FlowServerSettings(enable_cors=False), registry=registry, events=events)
        response = TestClient(server.app).get("/health")
        assert "Access-Control-Allow-Origin" not in response.headers

    def test_websocket_dispatch(self, echo_server, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"jsonrpc": "2.0", "id": "a", "method": "echo_tool", "params": {"message": "x"}}))
            reply = ws.receive_json()
            ws.send_text("{oops")
            parse_error = ws.receive_json()

        assert reply == {"jsonrpc": "2.0", "id": "a", "result": {"echoed": "x"}}
        assert parse_error["error"]["code"] == -32700


class FakeRequest:
    """Reports a disconnect after ``alive`` checks."""

    def __init__(self, alive: int):
        self.alive = alive

    async def is_disconnected(self) -> bool:
        self.alive -= 1
        return self.alive < 0


class TestEventStream:
    @pytest.mark.asyncio
    async def test_connected_then_heartbeats(self, server):
        chunks = [chunk async for chunk in server._event_stream(FakeRequest(alive=2))]

        messages = [json.loads(c[len("data: "):]) for c in chunks]
        assert all(c.startswith("data: ") and c.endswith("\n\n") for c in chunks)
        assert messages[0] == {"type": "connected", "server": "test-flow"}
        assert [m["type"] for m in messages[1:]] == ["heartbeat", "heartbeat"]
        assert "timestamp" in messages[1]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, registry, events, recorder, free_port):
        server = MCPFlowServer(
            FlowServerSettings(host="127.0.0.1", server_port=free_port), registry=registry, events=events
        )

        await server.start()
        try:
            assert server.is_running
            assert server.status()["isRunning"] is True
            with pytest.raises(AlreadyRunningError):
                await server.start()
        finally:
            await server.stop()

        assert not server.is_running
        started = recorder.payloads("mcp-server-started")[0]
        assert started["port"] == free_port
        assert recorder.payloads("mcp-server-stopped") == [{"serverId": server.server_id}]
        assert (await server.stop())["message"] == "Server already stopped"

    @pytest.mark.asyncio
    async def test_status_command(self, server, recorder):
        reply = await server.handle(Message("status"))

        assert reply.topic == "status"
        assert reply.payload == {
            "serverId": server.server_id,
            "serverName": "test-flow",
            "isRunning": False,
            "port": 8001,
            "toolCount": 0,
        }

    @pytest.mark.asyncio
    async def test_tool_response_command_routes_to_bridge(self, server, events):
        events.on("mcp-tool-execute", lambda m: server.handle(Message("mcp-tool-response", {
            "executionId": m.payload["executionId"],
            "result": "routed",
        })))

        assert await server.bridge.execute_tool_flow(ToolDefinition("any_tool", ""), {}) == "routed"
