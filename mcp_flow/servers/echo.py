"""
Echo flow server: one HTTP MCP endpoint hosting ``echo_tool``.

The supervisor launches it as a child process; the port and name come
from MCP_SERVER_PORT and MCP_SERVER_NAME. Clients reach it over /mcp,
/sse or /ws, and the call is answered in-process by EchoTool.

Launch:
    python -m mcp_flow.servers.echo
    MCP_SERVER_PORT=8000 python mcp_flow/servers/echo.py

Test:
    curl -s localhost:8001/mcp -d '{"jsonrpc":"2.0","id":1,"method":"echo_tool","params":{"message":"hi"}}'
"""

import asyncio
import logging
import os
import sys

# Add project root to path so imports work when run as a script
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from mcp_flow.execution import ToolHandler
from mcp_flow.servers import serve, settings_from_env


class EchoTool(ToolHandler):
    name = "echo_tool"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }
    required = ["message"]

    def handle(self, params: dict) -> dict:
        message = str(params.get("message", ""))
        return {"echoed": message, "length": len(message)}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    asyncio.run(serve([EchoTool()], settings_from_env("echo")))
