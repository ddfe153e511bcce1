"""
Transport layer for talking to a remote MCP endpoint.

Implements:
  - HttpTransport: connectivity is a health probe; every request is an
    independent POST whose body is the reply.
  - SseTransport: a long-lived server-to-client event stream; requests are
    POSTed, replies may come back in the POST body or on the stream.
  - WebSocketTransport: full duplex; requests and replies are text frames.

Streaming transports hand every inbound payload to their owner
(``on_frame``) and report a lost channel through ``on_lost``; correlation
lives in the owner's PendingRequests table, never in the transport.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from mcp_flow.errors import MCPFlowError, RequestTimeoutError, TransportError
from mcp_flow.jsonrpc import JsonRpcRequest

if TYPE_CHECKING:
    from mcp_flow.client import MCPClient

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000


@dataclass
class PendingRequest:
    request_id: str
    method: str
    future: asyncio.Future
    submitted_at: float
    timeout_handle: asyncio.TimerHandle


class PendingRequests:
    """
    Request-id → waiting caller, for one session.

    An entry is inserted on send and removed exactly once: by a matching
    reply (``resolve``) or by its timeout (``expire``). Disconnecting fires
    the timeout path of every entry at once.
    """

    def __init__(self, on_expired: Callable[[PendingRequest, MCPFlowError], None] | None = None):
        self._entries: dict[str, PendingRequest] = {}
        self._on_expired = on_expired

    def add(self, request_id: str, method: str, timeout: float) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        handle = loop.call_later(timeout, self.expire, request_id)
        self._entries[request_id] = PendingRequest(
            request_id=request_id,
            method=method,
            future=future,
            submitted_at=time.monotonic(),
            timeout_handle=handle,
        )
        return future

    def resolve(self, request_id: Any, response: Any) -> bool:
        entry = self._entries.pop(request_id, None) if isinstance(request_id, (str, int)) else None
        if entry is None:
            return False
        entry.timeout_handle.cancel()
        if not entry.future.done():
            entry.future.set_result(response)
        return True

    def expire(self, request_id: str, error: MCPFlowError | None = None) -> bool:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        entry.timeout_handle.cancel()
        error = error or RequestTimeoutError("Request timeout", request_id)
        if not entry.future.done():
            entry.future.set_exception(error)
            # The caller may have stopped waiting; don't log "never retrieved"
            entry.future.exception()
        if self._on_expired:
            self._on_expired(entry, error)
        return True

    def expire_all(self, error_factory: Callable[[str], MCPFlowError]) -> int:
        request_ids = list(self._entries.keys())
        for request_id in request_ids:
            self.expire(request_id, error_factory(request_id))
        return len(request_ids)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries


class Transport(ABC):
    """Abstract transport layer for MCP communication."""

    kind: str = ""
    label: str = ""
    # Whether replies can arrive outside the send() call
    streaming: bool = False

    def __init__(self, client: "MCPClient"):
        self.client = client
        self.settings = client.settings

    @abstractmethod
    async def open(self) -> dict[str, Any]:
        """Establish the channel. Returns metadata for the ``connected`` event."""
        ...

    @abstractmethod
    async def send(self, request: JsonRpcRequest) -> dict | None:
        """Send a request; return the reply if the channel delivers it inline."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    def _url(self, path: str) -> str:
        return f"{self.settings.base_url}{path}"


class HttpTransport(Transport):
    """Request/response over plain HTTP POSTs."""

    kind = "http"
    label = "HTTP"

    def __init__(self, client: "MCPClient", http_client: httpx.AsyncClient | None = None):
        super().__init__(client)
        self._http = http_client
        self._owns_http = http_client is None

    def _ensure_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._http

    async def open(self) -> dict[str, Any]:
        http = self._ensure_http()
        try:
            response = await http.get(self._url(self.settings.health_path), timeout=self.settings.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"Health check failed: {e}") from e
        try:
            server_info = response.json()
        except ValueError:
            server_info = response.text
        return {"serverInfo": server_info}

    async def post(self, request: JsonRpcRequest) -> dict:
        http = self._ensure_http()
        try:
            response = await http.post(
                self._url(self.settings.mcp_path),
                json=request.to_dict(),
                timeout=self.settings.timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError("Request timeout", request.id) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}", request.id) from e

        try:
            return response.json()
        except ValueError:
            if response.is_success and not response.content:
                return {}
            raise TransportError(
                f"Unexpected response ({response.status_code}): {response.text[:200]}", request.id
            ) from None

    async def send(self, request: JsonRpcRequest) -> dict | None:
        return await self.post(request)

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


class SseTransport(HttpTransport):
    """Server-Sent-Events stream for inbound messages, POSTs for requests."""

    kind = "sse"
    label = "SSE"
    streaming = True

    def __init__(self, client: "MCPClient", http_client: httpx.AsyncClient | None = None):
        super().__init__(client, http_client)
        self._response: httpx.Response | None = None
        self._reader: asyncio.Task | None = None
        self._closing = False

    def _ensure_http(self) -> httpx.AsyncClient:
        if self._http is None:
            # The stream stays open indefinitely, so no read timeout
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.timeout, read=None))
        return self._http

    async def open(self) -> dict[str, Any]:
        http = self._ensure_http()
        request = http.build_request(
            "GET",
            self._url(self.settings.sse_path),
            headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
        )
        try:
            response = await http.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"SSE connection failed: {e}") from e

        if response.status_code != 200:
            await response.aclose()
            raise TransportError(f"SSE connection failed: HTTP {response.status_code}")

        self._response = response
        self._reader = asyncio.create_task(self._read_events(response))
        return {"streamUrl": str(request.url)}

    async def _read_events(self, response: httpx.Response) -> None:
        data_lines: list[str] = []
        error: Exception | None = None
        try:
            async for line in response.aiter_lines():
                if not line:
                    if data_lines:
                        self.client.on_frame("\n".join(data_lines))
                        data_lines = []
                    continue
                if line.startswith(":"):
                    continue
                field, _, value = line.partition(":")
                if field == "data":
                    data_lines.append(value[1:] if value.startswith(" ") else value)
            if data_lines:
                self.client.on_frame("\n".join(data_lines))
        except (httpx.HTTPError, httpx.StreamError) as e:
            error = e

        if not self._closing:
            self.client.on_lost(self, TransportError(f"SSE stream error: {error or 'stream closed'}"), True)

    async def send(self, request: JsonRpcRequest) -> dict | None:
        reply = await self.post(request)
        if isinstance(reply, dict) and reply.get("id") == request.id:
            return reply
        return None

    async def close(self) -> None:
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._response is not None:
            await self._response.aclose()
            self._response = None
        await super().close()


class WebSocketTransport(Transport):
    """JSON-RPC text frames over one WebSocket."""

    kind = "websocket"
    label = "WS"
    streaming = True

    def __init__(self, client: "MCPClient"):
        super().__init__(client)
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._closing = False

    @property
    def ws_url(self) -> str:
        base = self.settings.base_url
        if base.startswith("http"):
            base = "ws" + base[len("http"):]
        return f"{base}{self.settings.ws_path}"

    async def open(self) -> dict[str, Any]:
        try:
            self._ws = await websockets.connect(self.ws_url, open_timeout=self.settings.timeout)
        except (OSError, asyncio.TimeoutError, websockets.InvalidURI, websockets.InvalidHandshake) as e:
            raise TransportError(f"WebSocket connection failed: {e}") from e
        self._reader = asyncio.create_task(self._read_frames())
        return {"wsUrl": self.ws_url}

    async def _read_frames(self) -> None:
        ws = self._ws
        error: Exception | None = None
        try:
            async for frame in ws:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8", errors="replace")
                self.client.on_frame(frame)
        except ConnectionClosed as e:
            error = e

        code = ws.close_code
        reason = getattr(ws, "close_reason", "") or ""
        logger.info(f"WebSocket connection closed: {code} {reason}")
        if self._closing:
            return
        retry = code != NORMAL_CLOSURE
        message = f"WebSocket closed: {code} {reason}".strip()
        self.client.on_lost(self, TransportError(message) if retry or error else None, retry)

    async def send(self, request: JsonRpcRequest) -> dict | None:
        if self._ws is None:
            raise TransportError("WebSocket is not open", request.id)
        try:
            await self._ws.send(request.to_json())
        except ConnectionClosed as e:
            raise TransportError(f"WebSocket closed: {e}", request.id) from e
        return None

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close(code=NORMAL_CLOSURE, reason="Normal closure")
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._ws = None


TRANSPORTS: dict[str, Callable[["MCPClient"], Transport]] = {
    HttpTransport.kind: HttpTransport,
    SseTransport.kind: SseTransport,
    WebSocketTransport.kind: WebSocketTransport,
}
