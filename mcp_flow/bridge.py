"""
Bridge between remote MCP tools and LangChain.

Converts the tools found by handshake discovery (or ``tools/list``) into
LangChain StructuredTools that call back through an MCPClient session.

Usage:
    from mcp_flow.bridge import discovered_langchain_tools

    client.events.on("handshake", on_handshake)
    ...
    tools = discovered_langchain_tools(client, discovered["tools"])
    agent = create_react_agent(model, tools)
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from langchain_core.tools import StructuredTool

from mcp_flow.errors import MCPFlowError
from mcp_flow.jsonrpc import JsonRpcResponse

if TYPE_CHECKING:
    from mcp_flow.client import MCPClient


def _format_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2)


def mcp_to_langchain_tool(
    client: "MCPClient",
    tool_schema: dict,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps one remote MCP tool.

    The returned tool, when invoked by an agent, sends a ``tools/call``
    request through the client session and returns the result as text.

    Args:
        client: A connected MCPClient
        tool_schema: One entry of a ``tools/list`` result
            ({"name", "description", "inputSchema"})
        description_override: Optional override for the tool description

    Returns:
        A LangChain StructuredTool that proxies calls to the MCP server.
    """
    tool_name = tool_schema["name"]
    description = description_override or tool_schema.get("description") or f"MCP tool: {tool_name}"
    args_schema = tool_schema.get("inputSchema") or {"type": "object", "properties": {}}

    async def _call_mcp(**kwargs: Any) -> str:
        """Proxy call to the remote MCP tool."""
        try:
            reply = JsonRpcResponse.from_dict(
                await client.send_request("tools/call", {"name": tool_name, "arguments": kwargs})
            )
        except MCPFlowError as e:
            return f"Error calling {tool_name}: {e.message}"
        if reply.is_error:
            return f"Error calling {tool_name}: {reply.error_message}"
        return _format_result(reply.result)

    return StructuredTool.from_function(
        coroutine=_call_mcp,
        name=tool_name,
        description=description,
        args_schema=args_schema,
    )


def discovered_langchain_tools(client: "MCPClient", tools: list[dict]) -> list[StructuredTool]:
    """Wrap every named tool of a discovery result."""
    return [mcp_to_langchain_tool(client, schema) for schema in tools if schema.get("name")]
