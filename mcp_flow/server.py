"""
MCP Flow Server — exposes registry tools over JSON-RPC.

Endpoints:
    GET  /health   → {"status": "healthy", "server", "uptime", "toolCount"}
    POST /mcp      → JSON-RPC dispatch
    GET  /sse      → event stream: "connected", then periodic "heartbeat"
    WS   /ws       → the same JSON-RPC dispatch, one request per text frame

Methods:
    - "initialize"   → protocol version, capabilities, server info
    - "tools/list"   → every tool in the registry
    - "tools/call"   → {"name", "arguments"} routed through the ExecutionBridge
    - "<name>_tool"  → direct call: the method is the tool name, params are the arguments

Usage:

    server = MCPFlowServer(FlowServerSettings(server_port=8001))
    FlowExecutor(server.bridge).register(EchoTool())
    await server.start()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response, StreamingResponse

from mcp_flow.config import PROTOCOL_VERSION, FlowServerSettings
from mcp_flow.errors import AlreadyRunningError, MCPFlowError, ToolExecutionError
from mcp_flow.events import EventEmitter, Message
from mcp_flow.execution import RESPONSE_TOPIC, ExecutionBridge
from mcp_flow.jsonrpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    error_envelope,
    result_envelope,
)
from mcp_flow.registry import ToolRegistry, get_registry

logger = logging.getLogger(__name__)

DIRECT_TOOL_SUFFIX = "_tool"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

_process_started = time.monotonic()


def _sse(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


class MCPFlowServer:
    """
    One HTTP listener serving the shared ToolRegistry.

    Input commands: ``start``, ``stop``, ``restart``, ``status`` and
    ``mcp-tool-response`` (routed to the ExecutionBridge).
    Output topics: ``mcp-server-started``, ``mcp-server-stopped``,
    ``mcp-tool-execute``, ``status``, ``error``.
    """

    RESTART_DELAY = 1.0
    AUTO_START_DELAY = 1.0

    def __init__(
        self,
        settings: FlowServerSettings | None = None,
        registry: ToolRegistry | None = None,
        events: EventEmitter | None = None,
    ):
        self.settings = settings or FlowServerSettings()
        self.registry = registry if registry is not None else get_registry()
        self.events = events or EventEmitter()
        self.bridge = ExecutionBridge(self.events, timeout=self.settings.execution_timeout)
        self.server_id = str(uuid.uuid4())
        self.app = self.create_app()

        self._uvicorn: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self.started_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    # ── HTTP surface ──────────────────────────────────────

    def create_app(self) -> FastAPI:
        app = FastAPI(title=self.settings.server_name, docs_url=None, redoc_url=None)

        if self.settings.enable_cors:
            @app.middleware("http")
            async def permissive_cors(request: Request, call_next):
                if request.method == "OPTIONS":
                    return Response(status_code=200, headers=CORS_HEADERS)
                response = await call_next(request)
                response.headers.update(CORS_HEADERS)
                return response

        @app.get("/health")
        async def health() -> dict:
            return {
                "status": "healthy",
                "server": self.settings.server_name,
                "uptime": round(time.monotonic() - _process_started, 3),
                "toolCount": len(self.registry),
            }

        @app.post("/mcp")
        async def mcp_endpoint(request: Request) -> JSONResponse:
            body = await request.body()
            try:
                payload = json.loads(body)
            except ValueError as e:
                logger.warning(f"Malformed MCP request body: {e}")
                return JSONResponse(error_envelope(None, PARSE_ERROR, "Parse error", str(e)), status_code=400)

            if not isinstance(payload, dict):
                return JSONResponse(error_envelope(None, INVALID_REQUEST, "Invalid Request"), status_code=400)

            try:
                return JSONResponse(await self.dispatch(payload))
            except Exception as e:
                logger.error(f"MCP request error: {e}")
                return JSONResponse(
                    error_envelope(payload.get("id"), INTERNAL_ERROR, "Internal error", str(e)),
                    status_code=500,
                )

        @app.get("/sse")
        async def sse_endpoint(request: Request) -> StreamingResponse:
            headers = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
            if self.settings.enable_cors:
                headers.update(CORS_HEADERS)
            return StreamingResponse(
                self._event_stream(request),
                media_type="text/event-stream",
                headers=headers,
            )

        @app.websocket("/ws")
        async def ws_endpoint(websocket: WebSocket) -> None:
            await websocket.accept()
            try:
                while True:
                    frame = await websocket.receive_text()
                    try:
                        payload = json.loads(frame)
                    except ValueError as e:
                        await websocket.send_json(error_envelope(None, PARSE_ERROR, "Parse error", str(e)))
                        continue
                    if not isinstance(payload, dict):
                        await websocket.send_json(error_envelope(None, INVALID_REQUEST, "Invalid Request"))
                        continue
                    # Calls run concurrently, so replies may come back out of order
                    task = asyncio.ensure_future(self._answer_frame(websocket, payload))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except WebSocketDisconnect:
                logger.debug("WebSocket client disconnected")

        return app

    async def _answer_frame(self, websocket: WebSocket, payload: dict) -> None:
        try:
            reply = await self.dispatch(payload)
        except Exception as e:
            logger.error(f"MCP request error: {e}")
            reply = error_envelope(payload.get("id"), INTERNAL_ERROR, "Internal error", str(e))
        try:
            await websocket.send_json(reply)
        except (RuntimeError, WebSocketDisconnect):
            logger.debug(f"Dropped reply for {payload.get('id')}: client gone")

    async def _event_stream(self, request: Request):
        yield _sse({"type": "connected", "server": self.settings.server_name})
        try:
            while not await request.is_disconnected():
                await asyncio.sleep(self.settings.heartbeat_interval)
                yield _sse({"type": "heartbeat", "timestamp": datetime.now(timezone.utc).isoformat()})
        finally:
            logger.debug("SSE client disconnected, heartbeat stopped")

    # ── JSON-RPC dispatch ─────────────────────────────────

    async def dispatch(self, request: dict) -> dict:
        """Route one JSON-RPC request to the matching handler."""
        method = request.get("method") or ""
        request_id = request.get("id")
        logger.debug(f"MCP request: {json.dumps(request, default=str)}")

        if method == "initialize":
            return result_envelope(request_id, self._initialize_result())

        if method == "tools/list":
            return result_envelope(request_id, {"tools": [t.to_mcp() for t in self.registry.list()]})

        if method == "tools/call":
            params = request.get("params") or {}
            return await self._call_tool(request_id, params.get("name", ""), params.get("arguments") or {})

        if method.endswith(DIRECT_TOOL_SUFFIX):
            return await self._call_tool(request_id, method, request.get("params") or {})

        return error_envelope(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize_result(self) -> dict:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": {
                "name": self.settings.server_name,
                "version": self.settings.server_version,
                "description": self.settings.server_description,
            },
        }

    async def _call_tool(self, request_id: Any, name: str, arguments: dict) -> dict:
        tool = self.registry.get(name)
        if tool is None:
            return error_envelope(request_id, INVALID_PARAMS, f"Tool not found: {name}")

        try:
            result = await self.bridge.execute_tool_flow(tool, arguments)
        except ToolExecutionError as e:
            return error_envelope(request_id, e.code, e.message)
        return result_envelope(request_id, result)

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> dict:
        if self.is_running:
            raise AlreadyRunningError("Server already running", self.server_id)

        config = uvicorn.Config(
            self.app,
            host=self.settings.host,
            port=self.settings.server_port,
            log_level=self.settings.log_level,
            lifespan="off",
            timeout_graceful_shutdown=self.settings.shutdown_timeout,
        )
        self._uvicorn = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._serve(self._uvicorn))

        while not self._uvicorn.started:
            if self._serve_task.done():
                self._uvicorn = None
                error = MCPFlowError(
                    f"Failed to bind port {self.settings.server_port}", self.server_id
                )
                self.events.emit("error", error.to_payload(), serverId=self.server_id)
                raise error
            await asyncio.sleep(0.05)

        self.started_at = datetime.now(timezone.utc)
        logger.info(f"MCP Flow Server started on port {self.settings.server_port}")
        self.events.emit("mcp-server-started", {
            "serverId": self.server_id,
            "serverName": self.settings.server_name,
            "port": self.settings.server_port,
            "startTime": self.started_at.isoformat(),
        })
        return {"success": True, "message": "Server started"}

    async def _serve(self, server: uvicorn.Server) -> None:
        try:
            await server.serve()
        except SystemExit:
            # uvicorn exits the interpreter when it cannot bind
            logger.error(f"MCP Flow Server could not listen on port {self.settings.server_port}")

    async def stop(self) -> dict:
        if not self.is_running:
            return {"success": True, "message": "Server already stopped"}

        self._uvicorn.should_exit = True
        await self._serve_task
        self._uvicorn = None
        self._serve_task = None
        logger.info(f"MCP Flow Server on port {self.settings.server_port} stopped")
        self.events.emit("mcp-server-stopped", {"serverId": self.server_id})
        return {"success": True, "message": "Server stopped"}

    async def restart(self) -> dict:
        await self.stop()
        await asyncio.sleep(self.RESTART_DELAY)
        return await self.start()

    def status(self) -> dict:
        return {
            "serverId": self.server_id,
            "serverName": self.settings.server_name,
            "isRunning": self.is_running,
            "port": self.settings.server_port,
            "toolCount": len(self.registry),
        }

    async def handle(self, message: Message) -> Message | None:
        command = message.command
        try:
            if command == "start":
                await self.start()
            elif command == "stop":
                await self.stop()
            elif command == "restart":
                await self.restart()
            elif command == "status":
                return self.events.emit("status", self.status(), **message.meta)
            elif command == RESPONSE_TOPIC:
                self.bridge.on_message(message)
            else:
                logger.warning(f"Unknown command: {command}")
        except AlreadyRunningError as e:
            logger.warning(e.message)
        except MCPFlowError as e:
            logger.error(f"{command} failed: {e.message}")
            return self.events.emit("error", e.to_payload(), serverId=self.server_id)
        return None

    def activate(self) -> None:
        if self.settings.auto_start:
            asyncio.get_running_loop().call_later(
                self.AUTO_START_DELAY, lambda: asyncio.ensure_future(self.handle(Message("start")))
            )

    async def close(self) -> None:
        await self.stop()
