from __future__ import annotations

import pytest

from mcp_flow.errors import RequestTimeoutError
from mcp_flow.handshake import HandshakeDiscovery, generate_example_params
from mcp_flow.jsonrpc import error_envelope, result_envelope

INIT_RESULT = {
    "protocolVersion": "2024-11-05",
    "capabilities": {"tools": {"listChanged": True}},
    "serverInfo": {"name": "weather", "version": "1.0.0"},
}

TOOLS = [
    {
        "name": "weather_tool",
        "description": "Current weather",
        "inputSchema": {
            "type": "object",
            "properties": {"city": {"type": "string"}, "units": {"type": "string", "enum": ["metric", "imperial"]}},
        },
    },
    {"name": "forecast_tool", "description": "Forecast", "inputSchema": {"properties": {"days": {"type": "integer"}}}},
]


class StubClient:
    """Answers send_request from a method → reply table."""

    def __init__(self, events, replies: dict):
        self.events = events
        self.replies = replies
        self.calls: list[tuple[str, dict]] = []

    async def send_request(self, method, params=None):
        self.calls.append((method, params))
        reply = self.replies[method]
        if isinstance(reply, Exception):
            raise reply
        return reply


class TestGenerateExampleParams:
    def test_string_and_number(self):
        schema = {"properties": {"a": {"type": "string", "description": "x"}, "b": {"type": "number"}}}
        assert generate_example_params(schema) == {"a": "x", "b": 123}

    def test_enum_and_integer(self):
        schema = {"type": "object", "properties": {"a": {"type": "string", "enum": ["x", "y"]}, "b": {"type": "integer"}}}
        assert generate_example_params(schema) == {"a": "x", "b": 123}

    def test_every_type(self):
        schema = {
            "properties": {
                "s": {"type": "string"},
                "e": {"type": "string", "enum": ["red", "green"]},
                "i": {"type": "integer"},
                "f": {"type": "boolean"},
                "o": {"type": "object"},
                "l": {"type": "array"},
                "u": {},
            }
        }
        assert generate_example_params(schema) == {
            "s": "example_value",
            "e": "red",
            "i": 123,
            "f": True,
            "o": {},
            "l": [],
            "u": "example_value",
        }

    def test_no_properties(self):
        assert generate_example_params({"type": "object"}) == {}
        assert generate_example_params(None) == {}


class TestHandshakeDiscovery:
    @pytest.mark.asyncio
    async def test_discovers_tools(self, events, recorder):
        client = StubClient(events, {
            "initialize": result_envelope("1", INIT_RESULT),
            "tools/list": result_envelope("2", {"tools": TOOLS}),
        })

        discovered = await HandshakeDiscovery(client).run()

        assert [method for method, _ in client.calls] == ["initialize", "tools/list"]
        assert client.calls[0][1]["protocolVersion"] == "2024-11-05"
        assert client.calls[0][1]["clientInfo"]["name"] == "mcp-flow-client"

        init_event, tools_event = recorder.payloads("handshake")
        assert init_event == {"type": "initialization", "result": INIT_RESULT}
        assert tools_event == discovered
        assert discovered["serverInfo"] == {"name": "weather", "version": "1.0.0"}
        assert discovered["toolCount"] == 2
        assert discovered["toolNames"] == ["weather_tool", "forecast_tool"]
        assert discovered["exampleCall"] == {
            "method": "tools/call",
            "params": {"name": "weather_tool", "arguments": {"city": "example_value", "units": "metric"}},
        }

    @pytest.mark.asyncio
    async def test_no_tools(self, events):
        client = StubClient(events, {
            "initialize": result_envelope("1", INIT_RESULT),
            "tools/list": result_envelope("2", {"tools": []}),
        })

        discovered = await HandshakeDiscovery(client).run()

        assert discovered["toolCount"] == 0
        assert discovered["exampleCall"] is None

    @pytest.mark.asyncio
    async def test_initialize_error_stops_discovery(self, events, recorder):
        client = StubClient(events, {"initialize": error_envelope("1", -32601, "Method not found: initialize")})

        assert await HandshakeDiscovery(client).run() is None
        assert recorder.topic("handshake") == []

    @pytest.mark.asyncio
    async def test_tools_list_timeout_keeps_initialization_event(self, events, recorder):
        client = StubClient(events, {
            "initialize": result_envelope("1", INIT_RESULT),
            "tools/list": RequestTimeoutError("Request timeout"),
        })

        assert await HandshakeDiscovery(client).run() is None
        assert [p["type"] for p in recorder.payloads("handshake")] == ["initialization"]
