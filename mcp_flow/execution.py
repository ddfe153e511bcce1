"""
Execution bridge: turns a registry lookup into an asynchronous round-trip.

The flow server does not run tools itself. For each call it publishes an
``mcp-tool-execute`` message and waits for an ``mcp-tool-response`` that
carries the same ``executionId``:

    ┌────────────┐ mcp-tool-execute  ┌──────────────┐
    │ FlowServer │ ────────────────▶ │   executor   │
    │  (bridge)  │ ◀──────────────── │ (host / flow)│
    └────────────┘ mcp-tool-response └──────────────┘

Either the correlated response or the timeout settles a call; whichever
comes second is ignored.

To answer calls in-process, register ToolHandlers with a FlowExecutor:

    class Echo(ToolHandler):
        name = "echo_tool"
        description = "Echoes back the input message"
        parameters = {"message": {"type": "string"}}

        def handle(self, params: dict) -> dict:
            return {"echoed": params.get("message", "")}

    FlowExecutor(bridge).register(Echo())
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from mcp_flow.errors import ToolExecutionError, ToolExecutionTimeout
from mcp_flow.events import EventEmitter, Message
from mcp_flow.registry import ToolDefinition

logger = logging.getLogger(__name__)

EXECUTE_TOPIC = "mcp-tool-execute"
RESPONSE_TOPIC = "mcp-tool-response"


@dataclass
class PendingExecution:
    execution_id: str
    tool_name: str
    arguments: dict[str, Any]
    deadline: float
    future: asyncio.Future
    loop: asyncio.AbstractEventLoop


def _settle(future: asyncio.Future, result: Any, error: Exception | None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class ExecutionBridge:
    """Correlates execution requests with their responses by executionId."""

    def __init__(self, events: EventEmitter, timeout: float = 30.0):
        self.events = events
        self.timeout = timeout
        self._pending: dict[str, PendingExecution] = {}
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    async def execute_tool_flow(self, tool: ToolDefinition, arguments: dict[str, Any] | None) -> Any:
        """Publish an execution request and wait for its single resolution."""
        loop = asyncio.get_running_loop()
        execution_id = str(uuid.uuid4())
        pending = PendingExecution(
            execution_id=execution_id,
            tool_name=tool.name,
            arguments=dict(arguments or {}),
            deadline=time.monotonic() + self.timeout,
            future=loop.create_future(),
            loop=loop,
        )
        with self._lock:
            self._pending[execution_id] = pending

        logger.debug(f"Executing tool '{tool.name}' ({execution_id})")
        self.events.emit(EXECUTE_TOPIC, {
            "toolName": tool.name,
            "arguments": pending.arguments,
            "executionId": execution_id,
        })

        try:
            return await asyncio.wait_for(pending.future, self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Tool '{tool.name}' timed out after {self.timeout}s ({execution_id})")
            raise ToolExecutionTimeout("Tool execution timeout", execution_id) from None
        finally:
            with self._lock:
                self._pending.pop(execution_id, None)

    def handle_response(self, payload: dict[str, Any]) -> bool:
        """
        Settle the execution named by ``payload["executionId"]``.

        Safe to call from any thread. Returns False when nothing was waiting
        (unknown id, already answered or already timed out).
        """
        execution_id = payload.get("executionId")
        with self._lock:
            pending = self._pending.pop(execution_id, None) if execution_id else None
        if pending is None:
            logger.debug(f"Ignoring response for unknown execution {execution_id}")
            return False

        error = None
        if payload.get("error"):
            error = ToolExecutionError(str(payload["error"]), execution_id)
        pending.loop.call_soon_threadsafe(_settle, pending.future, payload.get("result"), error)
        return True

    def on_message(self, message: Message) -> None:
        """EventEmitter-compatible handler for ``mcp-tool-response`` messages."""
        if isinstance(message.payload, dict):
            self.handle_response(message.payload)


class ToolHandler(ABC):
    """
    A tool answered inside the flow server's own process.

    FlowExecutor picks up ``mcp-tool-execute`` for ``name``, runs
    ``handle`` (sync or async) and posts the result back to the
    ExecutionBridge as ``mcp-tool-response``.
    """

    # Identity advertised through tools/list
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """Run the tool on the call's ``arguments``; the return value becomes the JSON-RPC result.

        Raising reports the exception text as the execution error.
        """
        ...

    def get_schema(self) -> dict:
        """Return the JSON schema of the tool's arguments."""
        return {
            "type": "object",
            "properties": self.parameters,
            "required": list(self.required),
        }

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.get_schema(),
        )


class FlowExecutor:
    """Answers ``mcp-tool-execute`` requests with registered ToolHandlers."""

    def __init__(self, bridge: ExecutionBridge):
        self.bridge = bridge
        self._handlers: dict[str, ToolHandler] = {}
        self._tasks: set[asyncio.Task] = set()
        bridge.events.on(EXECUTE_TOPIC, self._on_execute)

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool handler: {handler.name}")

    @property
    def handlers(self) -> list[ToolHandler]:
        return list(self._handlers.values())

    def _on_execute(self, message: Message) -> None:
        task = asyncio.ensure_future(self._run(message.payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, request: dict[str, Any]) -> None:
        execution_id = request.get("executionId")
        tool_name = request.get("toolName", "")
        handler = self._handlers.get(tool_name)

        if handler is None:
            self.bridge.handle_response({
                "executionId": execution_id,
                "error": f"No handler for tool: {tool_name}",
            })
            return

        try:
            result = handler.handle(request.get("arguments") or {})
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.error(f"Tool handler '{tool_name}' failed: {e}")
            self.bridge.handle_response({"executionId": execution_id, "error": str(e)})
            return

        self.bridge.handle_response({"executionId": execution_id, "result": result})
