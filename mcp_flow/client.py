"""
MCP Client — one logical session to a remote MCP endpoint.

The session owns at most one live transport, the pending-request table
and the reconnect timer. Transports only move bytes.

Usage:
    client = MCPClient(ClientSettings(server_url="http://localhost:8001",
                                      connection_type="websocket"))
    client.events.on("handshake", print)

    await client.connect()
    reply = await client.send_request("tools/list")
    await client.disconnect()

Input commands: ``connect``, ``disconnect``, ``request``, ``status``.
Output topics: ``connected``, ``response``, ``message``, ``raw``,
``error``, ``handshake``, plus the command replies.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any

from mcp_flow.config import ClientSettings
from mcp_flow.errors import ConfigurationError, MCPFlowError, NotConnectedError, TransportError
from mcp_flow.events import EventEmitter, Message
from mcp_flow.handshake import HandshakeDiscovery
from mcp_flow.jsonrpc import JsonRpcRequest
from mcp_flow.transport import TRANSPORTS, PendingRequest, PendingRequests, Transport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class MCPClient:
    """Session to one MCP endpoint over HTTP, SSE or WebSocket."""

    AUTO_CONNECT_DELAY = 1.0

    def __init__(self, settings: ClientSettings | None = None, events: EventEmitter | None = None):
        self.settings = settings or ClientSettings()
        self.events = events or EventEmitter()
        self.state = ConnectionState.DISCONNECTED
        self.pending = PendingRequests(on_expired=self._on_request_expired)
        self.handshake = HandshakeDiscovery(self)

        self._transport: Transport | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._handshake_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def connection_type(self) -> str:
        return self.settings.connection_type

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_handle is not None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Connection lifecycle ──────────────────────────────

    def _build_transport(self) -> Transport:
        factory = TRANSPORTS.get(self.settings.connection_type)
        if factory is None:
            raise ConfigurationError(f"Unsupported connection type: {self.settings.connection_type}")
        return factory(self)

    async def connect(self) -> dict:
        # One transport at a time: a racing caller waits, then sees the result
        async with self._connect_lock:
            return await self._connect()

    async def _connect(self) -> dict:
        if self.is_connected:
            return {"success": True, "message": "Already connected"}

        self.state = ConnectionState.CONNECTING
        try:
            transport = self._build_transport()
        except ConfigurationError as e:
            self.state = ConnectionState.ERROR
            self.events.emit("error", e.to_payload())
            raise
        await self._drop_transport()

        try:
            info = await transport.open()
        except MCPFlowError as e:
            await transport.close()
            self.state = ConnectionState.ERROR
            logger.error(f"Connection to {self.settings.server_url} failed: {e.message}")
            self.events.emit("error", {"error": e.message, "serverUrl": self.settings.server_url})
            if self.settings.reconnect:
                self.schedule_reconnect()
            raise

        self._transport = transport
        self.state = ConnectionState.CONNECTED
        logger.info(f"Connected to {self.settings.server_url} ({transport.label})")
        self.events.emit("connected", {
            "serverUrl": self.settings.server_url,
            "connectionType": transport.kind,
            **info,
        })

        if transport.streaming:
            self._handshake_task = self._spawn(self._delayed_handshake())
        return {"success": True, "message": f"{transport.label} connection established"}

    async def _delayed_handshake(self) -> dict | None:
        await asyncio.sleep(self.settings.handshake_delay)
        if self.is_connected:
            return await self.handshake.run()
        return None

    async def discover(self) -> dict | None:
        """Result of the connect-time handshake, or a fresh discovery on HTTP."""
        if self._handshake_task is not None:
            return await asyncio.shield(self._handshake_task)
        return await self.handshake.run()

    async def disconnect(self) -> dict:
        self.cancel_reconnect()
        if self._handshake_task is not None:
            self._handshake_task.cancel()
            self._handshake_task = None

        if self._transport is None and self.state is ConnectionState.DISCONNECTED:
            return {"success": True, "message": "Already disconnected"}

        await self._drop_transport()
        self.state = ConnectionState.DISCONNECTED
        cleared = self.pending.expire_all(
            lambda request_id: NotConnectedError("Disconnected before a response arrived", request_id)
        )
        logger.info(f"Disconnected from {self.settings.server_url} ({cleared} pending requests cleared)")
        return {"success": True, "message": "Disconnected"}

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning(f"Error closing {transport.label} transport: {e}")

    def on_lost(self, transport: Transport, error: MCPFlowError | None, retry: bool) -> None:
        """Called by a streaming transport when its channel goes away."""
        if transport is not self._transport:
            return

        self._transport = None
        self._spawn(transport.close())
        if error is not None:
            self.state = ConnectionState.ERROR
            logger.error(f"{transport.label} connection error: {error.message}")
            self.events.emit("error", {"error": error.message, "serverUrl": self.settings.server_url})
        else:
            self.state = ConnectionState.DISCONNECTED

        if retry and self.settings.reconnect:
            self.schedule_reconnect()

    # ── Reconnect ─────────────────────────────────────────

    def schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.settings.reconnect_interval, self._reconnect)
        logger.debug(f"Reconnect scheduled in {self.settings.reconnect_interval}s")

    def cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self.state not in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            logger.info("Attempting to reconnect...")
            self._spawn(self._try_connect())

    async def _try_connect(self) -> None:
        try:
            await self.connect()
        except MCPFlowError:
            # connect() already reported it and re-armed the timer
            pass

    # ── Requests ──────────────────────────────────────────

    async def send_request(self, method: str, params: dict[str, Any] | None = None) -> dict:
        """Send a JSON-RPC request and return the correlated reply envelope."""
        transport = self._transport
        if not self.is_connected or transport is None:
            raise NotConnectedError("Not connected to MCP server")

        request = JsonRpcRequest(method=method, params=params or {}, id=str(uuid.uuid4()))

        if not transport.streaming:
            try:
                reply = await transport.send(request)
            except TransportError as e:
                self.events.emit("error", e.to_payload())
                raise
            self.events.emit("response", reply, requestId=request.id)
            return reply

        future = self.pending.add(request.id, method, self.settings.timeout)
        try:
            reply = await transport.send(request)
        except TransportError as e:
            self.pending.expire(request.id, e)
            raise
        if reply is not None and self.pending.resolve(request.id, reply):
            self.events.emit("response", reply, requestId=request.id)
        return await future

    def on_frame(self, raw: str) -> None:
        """Route one inbound stream payload: response, message or raw."""
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Failed to parse {self.connection_type} message: {e}")
            self.events.emit("raw", raw)
            return

        request_id = data.get("id") if isinstance(data, dict) else None
        if request_id is not None and self.pending.resolve(request_id, data):
            self.events.emit("response", data, requestId=request_id)
        else:
            self.events.emit("message", data)

    def _on_request_expired(self, entry: PendingRequest, error: MCPFlowError) -> None:
        logger.warning(f"Request {entry.request_id} ({entry.method}) failed: {error.message}")
        self.events.emit("error", {"error": error.message, "requestId": entry.request_id})

    # ── Command surface ───────────────────────────────────

    def status(self) -> dict:
        return {
            "isConnected": self.is_connected,
            "state": self.state.value,
            "serverUrl": self.settings.server_url,
            "connectionType": self.connection_type,
            "pendingRequests": len(self.pending),
            "reconnectScheduled": self.reconnect_scheduled,
        }

    async def handle(self, message: Message) -> Message | None:
        command = message.command
        payload = message.payload if isinstance(message.payload, dict) else {}

        if command == "connect":
            try:
                result = await self.connect()
            except MCPFlowError:
                return None
            return self.events.emit("connect", result, **message.meta)

        if command == "disconnect":
            return self.events.emit("disconnect", await self.disconnect(), **message.meta)

        if command == "request":
            method = payload.get("method")
            if not method:
                logger.warning("Request method is required")
                return None
            try:
                reply = await self.send_request(method, payload.get("params") or {})
            except MCPFlowError as e:
                return self.events.emit("error", e.to_payload(), **message.meta)
            return Message("response", reply, dict(message.meta))

        if command == "status":
            return self.events.emit("status", self.status(), **message.meta)

        logger.warning(f"Unknown command: {command}")
        return None

    def activate(self) -> None:
        if self.settings.auto_connect:
            asyncio.get_running_loop().call_later(
                self.AUTO_CONNECT_DELAY, lambda: self._spawn(self._try_connect())
            )

    async def close(self) -> None:
        await self.disconnect()
