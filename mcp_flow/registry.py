"""
Process-wide tool registry and the collaborator that feeds it.

The registry is the single owner of ``name -> ToolDefinition``. It is
only mutated through ``register`` / ``unregister`` and only ever hands out
copies, so callers can never alias its storage.

    registry = get_registry()
    registration = ToolRegistration("weather_tool", "Current weather", schema)
    registration.register_tool()
    registry.names()   # ["weather_tool"]
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from mcp_flow.events import EventEmitter, Message

logger = logging.getLogger(__name__)

EMPTY_SCHEMA = {"type": "object", "properties": {}, "required": []}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ToolDefinition:
    """A named, schema-described operation exposed by the flow server."""
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: copy.deepcopy(EMPTY_SCHEMA))
    registered_by: str | None = None
    registered_at: datetime = field(default_factory=_now)

    def copy(self) -> "ToolDefinition":
        return replace(self, input_schema=copy.deepcopy(self.input_schema))

    def to_mcp(self) -> dict:
        """Shape used in ``tools/list`` results."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": copy.deepcopy(self.input_schema),
        }

    def snapshot(self) -> dict:
        return {
            **self.to_mcp(),
            "registeredBy": self.registered_by,
            "registeredAt": self.registered_at.isoformat(),
        }


class ToolRegistry:
    """Thread-safe ``name -> ToolDefinition`` mapping."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        self._lock = threading.Lock()

    def register(self, tool: ToolDefinition) -> ToolDefinition:
        """Add or replace a tool. Returns the stored copy."""
        stored = tool.copy()
        with self._lock:
            replaced = stored.name in self._tools
            self._tools[stored.name] = stored
        logger.info(f"{'Replaced' if replaced else 'Registered'} tool: {stored.name}")
        return stored.copy()

    def unregister(self, name: str) -> bool:
        with self._lock:
            removed = self._tools.pop(name, None)
        if removed:
            logger.info(f"Unregistered tool: {name}")
        return removed is not None

    def get(self, name: str) -> ToolDefinition | None:
        with self._lock:
            tool = self._tools.get(name)
        return tool.copy() if tool else None

    def list(self) -> list[ToolDefinition]:
        with self._lock:
            tools = list(self._tools.values())
        return [t.copy() for t in tools]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._tools.keys())

    def clear(self) -> None:
        with self._lock:
            self._tools.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools


_default_registry = ToolRegistry()


def get_registry() -> ToolRegistry:
    """The process-wide registry shared by every flow server."""
    return _default_registry


def parse_schema(schema: str | dict | None) -> dict:
    """Accept a JSON string or mapping; fall back to an empty object schema."""
    if schema is None or schema == "":
        return copy.deepcopy(EMPTY_SCHEMA)
    if isinstance(schema, dict):
        return copy.deepcopy(schema)
    try:
        parsed = json.loads(schema)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid tool schema JSON: {e}")
        return copy.deepcopy(EMPTY_SCHEMA)
    if not isinstance(parsed, dict):
        logger.warning("Invalid tool schema JSON: expected an object")
        return copy.deepcopy(EMPTY_SCHEMA)
    return parsed


class ToolRegistration:
    """
    Owns the registration of one tool in the registry.

    Input commands: ``register``, ``unregister``, ``update``, ``status``.
    Output topics: ``tool-registered``, ``tool-unregistered``, ``status``.
    """

    UPDATE_DELAY = 0.1
    AUTO_REGISTER_DELAY = 0.5

    def __init__(
        self,
        tool_name: str = "",
        description: str = "",
        schema: str | dict | None = None,
        *,
        auto_register: bool = True,
        registry: ToolRegistry | None = None,
        events: EventEmitter | None = None,
        owner_id: str | None = None,
    ):
        self.tool_name = tool_name
        self.description = description
        self.schema = parse_schema(schema)
        self.auto_register = auto_register
        self.registry = registry if registry is not None else get_registry()
        self.events = events or EventEmitter()
        self.owner_id = owner_id
        self.is_registered = False

    def register_tool(self) -> bool:
        if not self.tool_name:
            logger.warning("Tool name is required for registration")
            return False
        if self.is_registered:
            logger.warning(f"Tool '{self.tool_name}' is already registered")
            return False

        self.registry.register(ToolDefinition(
            name=self.tool_name,
            description=self.description or f"Tool: {self.tool_name}",
            input_schema=self.schema,
            registered_by=self.owner_id,
        ))
        self.is_registered = True
        self.events.emit("tool-registered", {
            "toolName": self.tool_name,
            "description": self.description,
            "schema": copy.deepcopy(self.schema),
        })
        return True

    def unregister_tool(self) -> bool:
        if not self.is_registered:
            logger.warning(f"Tool '{self.tool_name}' is not currently registered")
            return False

        self.registry.unregister(self.tool_name)
        self.is_registered = False
        self.events.emit("tool-unregistered", {"toolName": self.tool_name})
        return True

    async def update(
        self,
        tool_name: str | None = None,
        description: str | None = None,
        schema: str | dict | None = None,
    ) -> None:
        """Apply new definition fields, then re-register if registered."""
        previous_name = self.tool_name
        if tool_name:
            self.tool_name = tool_name
        if description:
            self.description = description
        if schema:
            if isinstance(schema, str):
                try:
                    self.schema = json.loads(schema)
                except ValueError as e:
                    logger.warning(f"Invalid schema in update: {e}")
            else:
                self.schema = copy.deepcopy(schema)

        if self.is_registered:
            self.registry.unregister(previous_name)
            self.is_registered = False
            self.events.emit("tool-unregistered", {"toolName": previous_name})
            await asyncio.sleep(self.UPDATE_DELAY)
            self.register_tool()

    def status(self) -> dict:
        return {
            "toolName": self.tool_name,
            "isRegistered": self.is_registered,
            "description": self.description,
            "schema": copy.deepcopy(self.schema),
        }

    async def handle(self, message: Message) -> Message | None:
        command = message.command
        payload = message.payload if isinstance(message.payload, dict) else {}

        if command == "register":
            self.register_tool()
        elif command == "unregister":
            self.unregister_tool()
        elif command == "update":
            await self.update(
                tool_name=payload.get("toolName"),
                description=payload.get("toolDescription"),
                schema=payload.get("toolSchema"),
            )
        elif command == "status":
            return self.events.emit("status", self.status(), **message.meta)
        else:
            logger.warning(f"Unknown command: {command}")
        return None

    def activate(self) -> None:
        """Auto-register shortly after the host has wired everything."""
        if self.auto_register and self.tool_name:
            loop = asyncio.get_running_loop()
            loop.call_later(self.AUTO_REGISTER_DELAY, self._auto_register)

    def _auto_register(self) -> None:
        if not self.is_registered:
            self.register_tool()

    async def close(self) -> None:
        if self.is_registered:
            self.unregister_tool()
