"""
Runnable MCP tool servers.

Each module is a standalone process: it hosts an MCPFlowServer, answers
calls in-process with ToolHandlers and prints a startup line that a
ProcessSupervisor recognises.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

from mcp_flow.config import FlowServerSettings
from mcp_flow.execution import FlowExecutor, ToolHandler
from mcp_flow.server import MCPFlowServer

logger = logging.getLogger(__name__)


def settings_from_env(default_name: str) -> FlowServerSettings:
    """Port and name handed down by a supervisor, if any."""
    overrides = {}
    if os.environ.get("MCP_SERVER_PORT"):
        overrides["server_port"] = int(os.environ["MCP_SERVER_PORT"])
    overrides["server_name"] = os.environ.get("MCP_SERVER_NAME") or default_name
    return FlowServerSettings(**overrides)


async def serve(handlers: list[ToolHandler], settings: FlowServerSettings | None = None) -> None:
    """Host ``handlers`` until SIGINT/SIGTERM."""
    server = MCPFlowServer(settings)
    executor = FlowExecutor(server.bridge)
    for handler in handlers:
        executor.register(handler)
        server.registry.register(handler.definition())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await server.start()
    print(f"Server started on port {server.settings.server_port}", flush=True)
    try:
        await stop.wait()
    finally:
        await server.stop()
        for handler in handlers:
            server.registry.unregister(handler.name)
