"""
Exception hierarchy for mcp_flow.

Public coroutines raise these; the command surfaces (``handle(message)``)
turn them into ``error`` events so nothing escapes into the host.
"""

from __future__ import annotations

from typing import Any

from mcp_flow.jsonrpc import INTERNAL_ERROR, INVALID_PARAMS


class MCPFlowError(Exception):
    """Base error. ``ident_name``/``ident`` carry the correlation id, if any."""

    ident_name = ""

    def __init__(self, message: str, ident: str | None = None):
        super().__init__(message)
        self.message = message
        self.ident = ident

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.ident is not None and self.ident_name:
            payload[self.ident_name] = self.ident
        return payload


class ConfigurationError(MCPFlowError):
    """Missing or invalid configuration; the component never starts."""
    ident_name = "serverId"


class AlreadyRunningError(MCPFlowError):
    ident_name = "serverId"


class TransportError(MCPFlowError):
    """Connection refused, malformed URL, broken stream..."""
    ident_name = "requestId"


class NotConnectedError(TransportError):
    pass


class RequestTimeoutError(TransportError):
    pass


class ToolNotFoundError(MCPFlowError):
    code = INVALID_PARAMS
    ident_name = "toolName"


class ToolExecutionError(MCPFlowError):
    code = INTERNAL_ERROR
    ident_name = "executionId"


class ToolExecutionTimeout(ToolExecutionError):
    pass
