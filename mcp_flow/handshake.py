"""
Handshake discovery for streaming sessions.

Once per SSE/WebSocket connection the client calls ``initialize`` and then
``tools/list`` and publishes what it found as ``handshake`` events, with a
ready-to-use example call for the first tool. Discovery is a convenience:
failures are logged and never affect the connection.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mcp_flow import __version__
from mcp_flow.config import PROTOCOL_VERSION
from mcp_flow.errors import MCPFlowError
from mcp_flow.jsonrpc import JsonRpcResponse

if TYPE_CHECKING:
    from mcp_flow.client import MCPClient

logger = logging.getLogger(__name__)

CLIENT_INFO = {"name": "mcp-flow-client", "version": __version__}

NUMBER_PLACEHOLDER = 123
STRING_PLACEHOLDER = "example_value"


def generate_example_params(schema: dict[str, Any] | None) -> dict[str, Any]:
    """Synthesize one argument object from a JSON schema's ``properties``."""
    example: dict[str, Any] = {}
    properties = (schema or {}).get("properties") or {}

    for name, prop in properties.items():
        prop = prop if isinstance(prop, dict) else {}
        kind = prop.get("type")
        if kind == "string":
            if prop.get("enum"):
                example[name] = prop["enum"][0]
            else:
                example[name] = prop.get("description") or STRING_PLACEHOLDER
        elif kind in ("number", "integer"):
            example[name] = NUMBER_PLACEHOLDER
        elif kind == "boolean":
            example[name] = True
        elif kind == "object":
            example[name] = {}
        elif kind == "array":
            example[name] = []
        else:
            example[name] = STRING_PLACEHOLDER

    return example


class HandshakeDiscovery:
    """Runs ``initialize`` + ``tools/list`` against a connected client."""

    def __init__(self, client: "MCPClient"):
        self.client = client

    async def _call(self, method: str, params: dict | None = None) -> Any:
        reply = JsonRpcResponse.from_dict(await self.client.send_request(method, params))
        if reply.is_error:
            raise MCPFlowError(f"{method} failed: {reply.error_message}")
        return reply.result

    async def run(self) -> dict | None:
        """Return the ``tools_discovered`` payload, or None if discovery stopped early."""
        events = self.client.events

        try:
            init_result = await self._call("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "clientInfo": CLIENT_INFO,
            })
        except MCPFlowError as e:
            logger.warning(f"Handshake initialize failed: {e.message}")
            return None

        events.emit("handshake", {"type": "initialization", "result": init_result})

        try:
            tools_result = await self._call("tools/list", {})
        except MCPFlowError as e:
            logger.warning(f"Handshake tools/list failed: {e.message}")
            return None

        if isinstance(tools_result, dict):
            tools_result = tools_result.get("tools") or []
        tools = [t for t in tools_result or [] if isinstance(t, dict)]
        tool_names = [t.get("name") for t in tools]
        example_call = None
        if tools:
            # One example is enough to show the call shape
            first = tools[0]
            example_call = {
                "method": "tools/call",
                "params": {
                    "name": first.get("name"),
                    "arguments": generate_example_params(first.get("inputSchema")),
                },
            }

        init_result = init_result if isinstance(init_result, dict) else {}
        discovered = {
            "type": "tools_discovered",
            "serverInfo": init_result.get("serverInfo"),
            "protocolVersion": init_result.get("protocolVersion"),
            "capabilities": init_result.get("capabilities"),
            "tools": tools,
            "toolCount": len(tools),
            "toolNames": tool_names,
            "exampleCall": example_call,
        }
        logger.info(f"Discovered {len(tools)} tools: {tool_names}")
        events.emit("handshake", discovered)
        return discovered
