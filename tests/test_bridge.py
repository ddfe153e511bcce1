from __future__ import annotations

import json

import pytest

from mcp_flow.bridge import discovered_langchain_tools, mcp_to_langchain_tool
from mcp_flow.errors import NotConnectedError
from mcp_flow.jsonrpc import error_envelope, result_envelope

WEATHER = {
    "name": "weather_tool",
    "description": "Current weather",
    "inputSchema": {
        "type": "object",
        "properties": {"city": {"type": "string", "description": "City name"}},
        "required": ["city"],
    },
}


class StubClient:
    def __init__(self, reply=None, error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    async def send_request(self, method, params=None):
        self.calls.append((method, params))
        if self.error:
            raise self.error
        return self.reply


class TestLangChainBridge:
    def test_tool_metadata(self):
        tool = mcp_to_langchain_tool(StubClient(), WEATHER)

        assert tool.name == "weather_tool"
        assert tool.description == "Current weather"
        assert "city" in tool.args

    def test_description_override(self):
        tool = mcp_to_langchain_tool(StubClient(), WEATHER, description_override="Weather now")
        assert tool.description == "Weather now"

    @pytest.mark.asyncio
    async def test_calls_through_client(self):
        client = StubClient(reply=result_envelope("1", {"temp": 21}))
        tool = mcp_to_langchain_tool(client, WEATHER)

        output = await tool.ainvoke({"city": "Oslo"})

        assert client.calls == [("tools/call", {"name": "weather_tool", "arguments": {"city": "Oslo"}})]
        assert json.loads(output) == {"temp": 21}

    @pytest.mark.asyncio
    async def test_string_result_passes_through(self):
        tool = mcp_to_langchain_tool(StubClient(reply=result_envelope("1", "sunny")), WEATHER)
        assert await tool.ainvoke({"city": "Oslo"}) == "sunny"

    @pytest.mark.asyncio
    async def test_rpc_error_returned_as_text(self):
        client = StubClient(reply=error_envelope("1", -32602, "Tool not found: weather_tool"))
        tool = mcp_to_langchain_tool(client, WEATHER)

        output = await tool.ainvoke({"city": "Oslo"})

        assert output == "Error calling weather_tool: Tool not found: weather_tool"

    @pytest.mark.asyncio
    async def test_transport_error_returned_as_text(self):
        tool = mcp_to_langchain_tool(StubClient(error=NotConnectedError("Not connected to MCP server")), WEATHER)
        assert await tool.ainvoke({"city": "Oslo"}) == "Error calling weather_tool: Not connected to MCP server"

    def test_discovered_tools_skip_unnamed(self):
        tools = discovered_langchain_tools(StubClient(), [WEATHER, {"description": "no name"}])
        assert [t.name for t in tools] == ["weather_tool"]
