"""
Settings for each mcp_flow component.

Values come from keyword arguments first, then from prefixed environment
variables (``MCP_CLIENT_SERVER_URL``, ``MCP_FLOW_SERVER_PORT``...).
Durations are seconds.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROTOCOL_VERSION = "2024-11-05"


class SupervisorSettings(BaseSettings):
    """External tool-server process supervised by ProcessSupervisor."""
    model_config = SettingsConfigDict(env_prefix="MCP_SUPERVISOR_", extra="ignore")

    server_name: str = "mcp-server"
    server_type: Literal["python", "node", "custom"] = "python"
    server_path: str = ""
    server_args: str = ""
    server_port: int = 8000
    python_executable: str = "python3"
    node_executable: str = "node"
    auto_start: bool = False
    health_check: bool = True
    health_check_interval: float = Field(default=30.0, gt=0)
    health_check_timeout: float = 5.0
    health_path: str = "/health"
    max_restarts: int = Field(default=3, ge=0)
    restart_delay: float = 5.0
    stop_grace_period: float = 5.0


class ClientSettings(BaseSettings):
    """Remote MCP endpoint and how to reach it."""
    model_config = SettingsConfigDict(env_prefix="MCP_CLIENT_", extra="ignore")

    server_url: str = "http://localhost:8000"
    connection_type: Literal["http", "sse", "websocket"] = "http"
    auto_connect: bool = False
    reconnect: bool = True
    reconnect_interval: float = 5.0
    timeout: float = Field(default=30.0, gt=0)
    handshake_delay: float = 1.0
    health_path: str = "/health"
    mcp_path: str = "/mcp"
    sse_path: str = "/sse"
    ws_path: str = "/ws"

    @property
    def base_url(self) -> str:
        return self.server_url.rstrip("/")


class FlowServerSettings(BaseSettings):
    """The embeddable MCP server that hosts registry tools."""
    model_config = SettingsConfigDict(env_prefix="MCP_FLOW_", extra="ignore")

    server_name: str = "mcp-flow-server"
    server_version: str = "1.0.0"
    server_description: str = "mcp_flow MCP Flow Server"
    host: str = "0.0.0.0"
    server_port: int = 8001
    auto_start: bool = False
    enable_cors: bool = True
    execution_timeout: float = Field(default=30.0, gt=0)
    heartbeat_interval: float = Field(default=30.0, gt=0)
    shutdown_timeout: float = 5.0
    log_level: str = "warning"


class ToolInvokerSettings(BaseSettings):
    """One-shot tool calls against a remote ``/mcp`` endpoint."""
    model_config = SettingsConfigDict(env_prefix="MCP_TOOL_", extra="ignore")

    server_url: str = "http://localhost:8000"
    tool_name: str = ""
    tool_params: str | dict[str, Any] = "{}"
    timeout: float = 30.0
    output_mode: Literal["result", "full", "custom"] = "result"
