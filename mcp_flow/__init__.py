"""
MCP Flow — supervise, reach and host MCP tool servers from asyncio code.

Architecture:
    ┌───────────────────┐   spawn/watch   ┌──────────────────┐
    │ ProcessSupervisor │ ─────────────── │   Tool Server    │
    └───────────────────┘  stdout/health  │   (subprocess)   │
                                          └────────┬─────────┘
    ┌───────────────────┐  HTTP / SSE / WS         │
    │     MCPClient     │ ─────────────────────────┘
    │  + Handshake      │   JSON-RPC 2.0
    └───────────────────┘

    ┌───────────────────┐ mcp-tool-execute ┌──────────────────┐
    │   MCPFlowServer   │ ───────────────▶ │   FlowExecutor   │
    │  ToolRegistry     │ ◀─────────────── │   (ToolHandlers) │
    └───────────────────┘ mcp-tool-response└──────────────────┘

Every component reports through an EventEmitter and accepts
commands as Messages via ``handle(message)``.
"""

__version__ = "0.1.0"

from mcp_flow.client import ConnectionState, MCPClient
from mcp_flow.config import ClientSettings, FlowServerSettings, SupervisorSettings, ToolInvokerSettings
from mcp_flow.errors import MCPFlowError
from mcp_flow.events import EventEmitter, Message
from mcp_flow.execution import ExecutionBridge, FlowExecutor, ToolHandler
from mcp_flow.registry import ToolDefinition, ToolRegistration, ToolRegistry, get_registry
from mcp_flow.server import MCPFlowServer
from mcp_flow.supervisor import ProcessState, ProcessSupervisor
from mcp_flow.tool import MCPToolInvoker

# Bridge requires langchain; imported lazily so servers stay standalone
def mcp_to_langchain_tool(*args, **kwargs):
    from mcp_flow.bridge import mcp_to_langchain_tool as _impl
    return _impl(*args, **kwargs)

def discovered_langchain_tools(*args, **kwargs):
    from mcp_flow.bridge import discovered_langchain_tools as _impl
    return _impl(*args, **kwargs)

__all__ = [
    "ClientSettings",
    "ConnectionState",
    "EventEmitter",
    "ExecutionBridge",
    "FlowExecutor",
    "FlowServerSettings",
    "MCPClient",
    "MCPFlowError",
    "MCPFlowServer",
    "MCPToolInvoker",
    "Message",
    "ProcessState",
    "ProcessSupervisor",
    "SupervisorSettings",
    "ToolDefinition",
    "ToolHandler",
    "ToolInvokerSettings",
    "ToolRegistration",
    "ToolRegistry",
    "discovered_langchain_tools",
    "get_registry",
    "mcp_to_langchain_tool",
]
