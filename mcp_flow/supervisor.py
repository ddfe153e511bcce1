"""
Process Supervisor — launches and watches an external MCP tool server.

The supervisor owns one child process:

    stopped ──▶ starting ──▶ running ⇄ unhealthy
                   ▲            │
                   │            ▼ (non-zero exit, budget left)
                   └──────  restarting
                                │ (exit over budget / explicit stop)
                                ▼
                          stopped / error

Usage:
    supervisor = ProcessSupervisor(SupervisorSettings(
        server_path="servers/weather.py", server_port=8000, max_restarts=3,
    ))
    supervisor.events.on("stdout", lambda msg: print(msg.payload))

    await supervisor.start()
    ...
    await supervisor.stop()

Input commands: ``start``, ``stop``, ``restart``, ``status``.
Output topics: ``stdout``, ``stderr``, ``started``, ``exit``, ``error``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import uuid
from datetime import datetime, timezone
from enum import Enum

import httpx

from mcp_flow.config import SupervisorSettings
from mcp_flow.errors import AlreadyRunningError, ConfigurationError, MCPFlowError
from mcp_flow.events import EventEmitter, Message

logger = logging.getLogger(__name__)

# Output substrings that mean the child is up and serving
STARTUP_MARKERS = ("Server started", "listening", "FastMCP server")


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    RESTARTING = "restarting"
    ERROR = "error"


class ProcessSupervisor:
    """Lifecycle of one supervised tool-server process."""

    RESTART_PAUSE = 2.0
    READ_CHUNK = 65536
    AUTO_START_DELAY = 1.0

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        events: EventEmitter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or SupervisorSettings()
        self.events = events or EventEmitter()
        self.server_id = str(uuid.uuid4())
        self.state = ProcessState.STOPPED
        self.restart_count = 0
        self.last_health_check: datetime | None = None
        self.start_time: datetime | None = None

        self._process: asyncio.subprocess.Process | None = None
        self._stop_requested = False
        self._watch_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None
        self._kill_handle: asyncio.TimerHandle | None = None
        self._http = http_client
        self._owns_http = http_client is None

    @property
    def max_restarts(self) -> int:
        return self.settings.max_restarts

    @property
    def is_running(self) -> bool:
        return self.state in (ProcessState.RUNNING, ProcessState.UNHEALTHY)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def _tags(self) -> dict:
        return {"serverId": self.server_id, "serverName": self.settings.server_name}

    # ── Command construction ──────────────────────────────

    def build_command(self) -> tuple[str, list[str]]:
        """Resolve (executable, args) from the server type and path."""
        path = self.settings.server_path.strip()
        if not path:
            raise ConfigurationError(
                f"Server path is required for {self.settings.server_type} MCP servers", self.server_id
            )

        extra = [a for a in self.settings.server_args.split() if a]
        if self.settings.server_type == "python":
            return self.settings.python_executable, [path, *extra]
        if self.settings.server_type == "node":
            return self.settings.node_executable, [path, *extra]

        parts = path.split()
        return parts[0], [*parts[1:], *extra]

    def build_env(self) -> dict[str, str]:
        return {
            **os.environ,
            "MCP_SERVER_PORT": str(self.settings.server_port),
            "MCP_SERVER_NAME": self.settings.server_name,
            "MCP_FLOW_SERVER_ID": self.server_id,
        }

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> dict:
        if self._process is not None:
            raise AlreadyRunningError("Server already running", self.server_id)

        try:
            command, args = self.build_command()
        except ConfigurationError as e:
            self.state = ProcessState.ERROR
            logger.error(e.message)
            self.events.emit("error", e.to_payload(), **self._tags())
            raise

        self._stop_requested = False
        self.state = ProcessState.STARTING
        logger.info(f"Starting {self.settings.server_name}: {command} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                cwd=os.getcwd(),
            )
        except OSError as e:
            self.state = ProcessState.ERROR
            error = MCPFlowError(f"Failed to start MCP server: {e}", self.server_id)
            logger.error(error.message)
            self.events.emit("error", error.to_payload(), **self._tags())
            raise error from e

        self._process = process
        self._watch_task = asyncio.create_task(self._watch(process))
        return {"success": True, "message": "Server starting", "serverId": self.server_id}

    async def stop(self) -> dict:
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None

        # An exited child may not have been through _on_exit yet
        self._stop_requested = True

        process = self._process
        if process is None or process.returncode is not None:
            self._stop_health_check()
            self.state = ProcessState.STOPPED
            return {"success": True, "message": "Server already stopped"}

        self._stop_health_check()

        try:
            process.terminate()
        except ProcessLookupError:
            pass
        loop = asyncio.get_running_loop()
        self._kill_handle = loop.call_later(self.settings.stop_grace_period, self._force_kill, process)

        # The OS-level exit may still be in flight
        self.state = ProcessState.STOPPED
        logger.info(f"Stopping {self.settings.server_name} (pid {process.pid})")
        return {"success": True, "message": "Server stopping"}

    def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        self._kill_handle = None
        if process.returncode is None:
            logger.warning(f"{self.settings.server_name} ignored SIGTERM, killing pid {process.pid}")
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def restart(self) -> dict:
        await self.stop()
        if self._watch_task is not None:
            await asyncio.wait({self._watch_task})
        await asyncio.sleep(self.RESTART_PAUSE)
        return await self.start()

    async def wait_closed(self) -> None:
        """Wait until the current process (if any) has exited and been handled."""
        if self._watch_task is not None:
            await asyncio.wait({self._watch_task})

    # ── Output & exit handling ────────────────────────────

    async def _pump(self, stream: asyncio.StreamReader, name: str) -> None:
        # Split lines by hand: StreamReader.readline() rejects lines over its 64 KiB limit
        buffer = b""
        while True:
            chunk = await stream.read(self.READ_CHUNK)
            if not chunk:
                break
            *lines, buffer = (buffer + chunk).split(b"\n")
            for raw in lines:
                self._on_line(raw, name)
        if buffer:
            self._on_line(buffer, name)

    def _on_line(self, raw: bytes, name: str) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            return
        if name == "stdout":
            logger.info(f"[{self.settings.server_name}] STDOUT: {line}")
        else:
            logger.warning(f"[{self.settings.server_name}] STDERR: {line}")
        self.events.emit(name, line, **self._tags())

        if self.state is ProcessState.STARTING and any(m in line for m in STARTUP_MARKERS):
            self._on_started()

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.gather(
                self._pump(process.stdout, "stdout"),
                self._pump(process.stderr, "stderr"),
            )
        except Exception:
            logger.exception(f"Lost output of {self.settings.server_name} (pid {process.pid})")
        finally:
            returncode = await process.wait()
            self._on_exit(process, returncode)

    def _on_started(self) -> None:
        self.state = ProcessState.RUNNING
        self.restart_count = 0
        self.start_time = datetime.now(timezone.utc)
        logger.info(f"{self.settings.server_name} is running on port {self.settings.server_port}")

        if self.settings.health_check:
            self._start_health_check()

        self.events.emit("started", {
            "serverId": self.server_id,
            "serverName": self.settings.server_name,
            "port": self.settings.server_port,
            "startTime": self.start_time.isoformat(),
        })

    def _on_exit(self, process: asyncio.subprocess.Process, returncode: int) -> None:
        if self._kill_handle is not None:
            self._kill_handle.cancel()
            self._kill_handle = None
        if self._process is process:
            self._process = None

        code: int | None = returncode if returncode >= 0 else None
        sig = signal.Signals(-returncode).name if returncode < 0 else None
        logger.info(f"MCP server exited with code {code}, signal {sig}")
        self._stop_health_check()

        if not self._stop_requested and returncode != 0 and self.restart_count < self.max_restarts:
            self.restart_count += 1
            self.state = ProcessState.RESTARTING
            self._restart_task = asyncio.create_task(self._delayed_restart())
            return

        if self._stop_requested or returncode == 0:
            self.state = ProcessState.STOPPED
        else:
            self.state = ProcessState.ERROR
        self.events.emit("exit", {"code": code, "signal": sig}, **self._tags())

    async def _delayed_restart(self) -> None:
        await asyncio.sleep(self.settings.restart_delay)
        self._restart_task = None
        if self._stop_requested:
            return
        logger.info(f"Attempting restart {self.restart_count}/{self.max_restarts}")
        try:
            await self.start()
        except MCPFlowError:
            # start() already reported it
            pass

    # ── Health checks ─────────────────────────────────────

    def _start_health_check(self) -> None:
        self._stop_health_check()
        self._health_task = asyncio.create_task(self._health_loop())

    def _stop_health_check(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            await self.check_health()

    async def check_health(self) -> bool:
        """Probe the child's health endpoint once and update the state."""
        if self._http is None:
            self._http = httpx.AsyncClient()
        url = f"http://localhost:{self.settings.server_port}{self.settings.health_path}"

        try:
            response = await self._http.get(url, timeout=self.settings.health_check_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed: {e}")
            if self.state is ProcessState.RUNNING:
                self.state = ProcessState.UNHEALTHY
            return False

        self.last_health_check = datetime.now(timezone.utc)
        if self.state is ProcessState.UNHEALTHY:
            self.state = ProcessState.RUNNING
        return True

    # ── Command surface ───────────────────────────────────

    def status(self) -> dict:
        return {
            "serverId": self.server_id,
            "serverName": self.settings.server_name,
            "state": self.state.value,
            "isRunning": self.is_running,
            "port": self.settings.server_port,
            "lastHealthCheck": self.last_health_check.isoformat() if self.last_health_check else None,
            "restartCount": self.restart_count,
            "maxRestarts": self.max_restarts,
            "pid": self.pid,
        }

    async def handle(self, message: Message) -> Message | None:
        command = message.command
        try:
            if command == "start":
                return self.events.emit("start", await self.start(), **message.meta)
            if command == "stop":
                return self.events.emit("stop", await self.stop(), **message.meta)
            if command == "restart":
                return self.events.emit("restart", await self.restart(), **message.meta)
            if command == "status":
                return self.events.emit("status", self.status(), **message.meta)
        except AlreadyRunningError as e:
            logger.warning(f"MCP server is already running ({self.settings.server_name})")
            return self.events.emit(command, {"success": False, "message": e.message}, **message.meta)
        except MCPFlowError:
            # Already reported as an error event
            return None

        logger.warning(f"Unknown command: {command}")
        return None

    def activate(self) -> None:
        if self.settings.auto_start:
            asyncio.get_running_loop().call_later(
                self.AUTO_START_DELAY, lambda: asyncio.ensure_future(self.handle(Message("start")))
            )

    async def close(self) -> None:
        self._stop_health_check()
        await self.stop()
        await self.wait_closed()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
