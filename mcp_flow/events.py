"""
Output event surface.

Every component publishes what it observes as a ``Message`` tagged by
topic (``stdout``, ``started``, ``connected``, ``response``, ``handshake``,
``tool-registered``, ``mcp-tool-execute``...). The host decides where the
messages go; components never assume anything about the wiring.

    events = EventEmitter()
    events.on("exit", lambda msg: print(msg.payload))
    events.on("*", log_everything)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

logger = logging.getLogger(__name__)

ALL_TOPICS = "*"


@dataclass
class Message:
    """A topic-tagged payload with optional correlation metadata."""
    topic: str
    payload: Any = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        data = dict(data)
        return cls(
            topic=data.pop("topic", "") or "",
            payload=data.pop("payload", None),
            meta=data,
        )

    @property
    def command(self) -> str:
        """The symbolic command: the topic, else ``payload.command``."""
        if self.topic:
            return self.topic
        if isinstance(self.payload, dict):
            return self.payload.get("command", "") or ""
        return ""

    def to_dict(self) -> dict:
        return {"topic": self.topic, "payload": self.payload, **self.meta}


Handler = Callable[[Message], Any]


class EventEmitter:
    """Synchronous fan-out of messages to subscribed handlers."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def on(self, topic: str, handler: Handler) -> Handler:
        self._handlers[topic].append(handler)
        return handler

    def off(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, topic: str, payload: Any = None, **meta: Any) -> Message:
        message = Message(topic=topic, payload=payload, meta=meta)
        self.publish(message)
        return message

    def publish(self, message: Message) -> None:
        for handler in list(self._handlers.get(message.topic, [])) + list(self._handlers.get(ALL_TOPICS, [])):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(partial(self._on_task_done, message.topic))
            except Exception:
                logger.exception(f"Event handler failed for topic '{message.topic}'")

    def _on_task_done(self, topic: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Event handler failed for topic '{topic}'", exc_info=error)
