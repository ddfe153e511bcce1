"""
One-shot tool invocation against a remote ``/mcp`` endpoint.

Unlike MCPClient there is no session: every call is an independent
JSON-RPC POST. Useful from scripts and for flows that only need to fire
a tool now and then.

    invoker = MCPToolInvoker(ToolInvokerSettings(
        server_url="http://localhost:8001", tool_name="echo_tool",
    ))
    reply = await invoker.handle(Message("", {"message": "hi"}))
    reply.topic     # "result"
    reply.payload   # the JSON-RPC result
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from mcp_flow.config import ToolInvokerSettings
from mcp_flow.errors import RequestTimeoutError, TransportError
from mcp_flow.events import EventEmitter, Message
from mcp_flow.jsonrpc import JsonRpcRequest

logger = logging.getLogger(__name__)


def parse_params(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Configured parameters: a JSON object string or a mapping."""
    if isinstance(raw, dict):
        return dict(raw)
    try:
        parsed = json.loads(raw or "{}")
    except ValueError as e:
        logger.warning(f"Invalid tool parameters JSON: {e}")
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Invalid tool parameters JSON: expected an object")
        return {}
    return parsed


class MCPToolInvoker:
    """Calls a single tool method per input message."""

    def __init__(
        self,
        settings: ToolInvokerSettings | None = None,
        events: EventEmitter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or ToolInvokerSettings()
        self.events = events or EventEmitter()
        self.params = parse_params(self.settings.tool_params)
        self._http = http_client
        self._owns_http = http_client is None

    @property
    def base_url(self) -> str:
        return self.settings.server_url.rstrip("/")

    def _ensure_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._http

    async def invoke(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """POST one JSON-RPC request and return the parsed body."""
        # Millisecond timestamps are unique enough for uncorrelated calls
        request = JsonRpcRequest(method=method, params=params or {}, id=int(time.time() * 1000))
        logger.debug(f"Invoking {method} on {self.base_url}")

        try:
            response = await self._ensure_http().post(
                f"{self.base_url}/mcp",
                json=request.to_dict(),
                timeout=self.settings.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Request to {method} timed out", str(request.id)) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Tool call {method} failed: {e}", str(request.id)) from e

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {method}: {e}", str(request.id)) from e

    async def list_tools(self) -> list[dict]:
        """Tools advertised by the remote server, or [] if it has none."""
        reply = await self.invoke("tools/list")
        result = reply.get("result") if isinstance(reply, dict) else None
        if isinstance(result, dict) and isinstance(result.get("tools"), list):
            return result["tools"]
        return []

    def resolve_method(self, message: Message) -> str:
        method = self.settings.tool_name
        if message.topic:
            method = message.topic
        if isinstance(message.payload, dict) and message.payload.get("method"):
            method = message.payload["method"]
        return method

    def resolve_params(self, message: Message) -> dict[str, Any]:
        params = dict(self.params)
        payload = message.payload
        if isinstance(payload, dict):
            if isinstance(payload.get("params"), dict):
                params.update(payload["params"])
            elif not payload.get("method"):
                params.update(payload)
        return params

    def format_output(self, message: Message, response: Any) -> Message:
        has_result = isinstance(response, dict) and response.get("result") is not None
        extracted = response["result"] if has_result else response
        mode = self.settings.output_mode

        if mode == "full":
            return Message("result", response, dict(message.meta))
        if mode == "custom":
            meta = {**message.meta, "response": response, "result": extracted}
            return Message("result", message.payload, meta)
        return Message("result", extracted, dict(message.meta))

    async def handle(self, message: Message) -> Message | None:
        method = self.resolve_method(message)
        if not method:
            logger.warning("No tool method specified")
            return None

        try:
            response = await self.invoke(method, self.resolve_params(message))
        except TransportError as e:
            logger.error(e.message)
            reply = Message("error", {"error": e.message}, {**message.meta, "error": e.message})
            self.events.publish(reply)
            return reply

        reply = self.format_output(message, response)
        self.events.publish(reply)
        return reply

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
