"""
Shared fixtures for mcp_flow tests.

Every test gets its own ToolRegistry and EventEmitter so nothing leaks
through the process-wide registry.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Any

import pytest

from mcp_flow.events import EventEmitter, Message
from mcp_flow.registry import ToolRegistry


class Recorder:
    """Collects every message published on an EventEmitter."""

    def __init__(self, events: EventEmitter):
        self.messages: list[Message] = []
        events.on("*", self.messages.append)

    def topic(self, name: str) -> list[Message]:
        return [m for m in self.messages if m.topic == name]

    def payloads(self, name: str) -> list[Any]:
        return [m.payload for m in self.topic(name)]

    async def wait_for(self, name: str, count: int = 1, timeout: float = 5.0) -> list[Message]:
        async def _poll():
            while len(self.topic(name)) < count:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout)
        return self.topic(name)


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def recorder(events):
    return Recorder(events)


@pytest.fixture
def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
