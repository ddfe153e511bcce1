"""
Run Flow — command-line front end for mcp_flow.

Subcommands:
1. serve      host an MCPFlowServer with the demo echo tool
2. supervise  launch an external tool server and stream its events
3. connect    open a session, run discovery and print the tools
4. call       fire a single tool call

Usage:
    # Host the echo tool on port 8001
    python run_flow.py serve --port 8001

    # Supervise a tool server script, restarting it on crashes
    python run_flow.py supervise mcp_flow/servers/echo.py --port 8000 --max-restarts 3

    # Discover tools over WebSocket
    python run_flow.py connect --url http://localhost:8001 --type websocket

    # One-shot call
    python run_flow.py call echo_tool --url http://localhost:8001 --params '{"message": "hi"}'
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from mcp_flow.client import MCPClient
from mcp_flow.config import ClientSettings, FlowServerSettings, SupervisorSettings, ToolInvokerSettings
from mcp_flow.errors import MCPFlowError
from mcp_flow.events import EventEmitter, Message
from mcp_flow.servers import serve
from mcp_flow.servers.echo import EchoTool
from mcp_flow.supervisor import ProcessSupervisor
from mcp_flow.tool import MCPToolInvoker

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def _print_event(message: Message) -> None:
    payload = message.payload if isinstance(message.payload, str) else json.dumps(message.payload, default=str)
    print(f"[{message.topic}] {payload}")


async def _wait_for_signal() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await stop.wait()


# ── Subcommands ───────────────────────────────────────────

async def cmd_serve(args: argparse.Namespace) -> int:
    settings = FlowServerSettings(server_name=args.name, host=args.host, server_port=args.port)
    await serve([EchoTool()], settings)
    return 0


async def cmd_supervise(args: argparse.Namespace) -> int:
    events = EventEmitter()
    events.on("*", _print_event)
    supervisor = ProcessSupervisor(
        SupervisorSettings(
            server_name=args.name,
            server_type=args.type,
            server_path=args.path,
            server_args=" ".join(args.server_args),
            server_port=args.port,
            max_restarts=args.max_restarts,
            health_check=not args.no_health_check,
        ),
        events,
    )

    try:
        await supervisor.start()
    except MCPFlowError as e:
        print(f"Error: {e.message}")
        return 1

    print("Supervising... press Ctrl+C to stop.")
    try:
        await _wait_for_signal()
    finally:
        print("\nStopping MCP server...")
        await supervisor.close()
    return 0


async def cmd_connect(args: argparse.Namespace) -> int:
    events = EventEmitter()
    if args.verbose:
        events.on("*", _print_event)

    client = MCPClient(
        ClientSettings(server_url=args.url, connection_type=args.type, reconnect=False),
        events,
    )
    try:
        await client.connect()
    except MCPFlowError as e:
        print(f"Error: {e.message}")
        return 1

    try:
        result = await asyncio.wait_for(client.discover(), client.settings.timeout)
    except asyncio.TimeoutError:
        print("Error: tool discovery timed out")
        return 1
    finally:
        await client.disconnect()

    if result is None:
        print("Error: tool discovery failed")
        return 1

    server = result.get("serverInfo") or {}
    print(f"\nServer: {server.get('name')} {server.get('version', '')}")
    print(f"Protocol: {result.get('protocolVersion')}")
    print(f"Tools ({result['toolCount']}):")
    for tool in result["tools"]:
        print(f"  {tool.get('name'):<30} {tool.get('description', '')}")
    if result.get("exampleCall"):
        print(f"\nExample call:\n{json.dumps(result['exampleCall'], indent=2)}")
    return 0


async def cmd_call(args: argparse.Namespace) -> int:
    invoker = MCPToolInvoker(ToolInvokerSettings(
        server_url=args.url,
        tool_name=args.tool,
        tool_params=args.params,
        timeout=args.timeout,
        output_mode=args.output,
    ))
    try:
        reply = await invoker.handle(Message(""))
    finally:
        await invoker.close()

    if reply is None:
        return 1
    print(json.dumps(reply.to_dict() if args.output == "custom" else reply.payload, indent=2, default=str))
    return 0 if reply.topic == "result" else 1


def main():
    parser = argparse.ArgumentParser(
        description="Supervise, connect to and host MCP tool servers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_flow.py serve --port 8001
  python run_flow.py supervise mcp_flow/servers/echo.py --port 8000
  python run_flow.py connect --url http://localhost:8001 --type sse
  python run_flow.py call echo_tool --params '{"message": "hi"}'
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Host the demo echo tool")
    p_serve.add_argument("--name", default="mcp-flow-server", help="Server name reported to clients")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", "-p", type=int, default=8001)
    p_serve.set_defaults(func=cmd_serve)

    p_sup = sub.add_parser("supervise", help="Launch and watch a tool server process")
    p_sup.add_argument("path", help="Server script, or the full command line for --type custom")
    p_sup.add_argument("server_args", nargs="*", help="Extra arguments for the server")
    p_sup.add_argument("--type", "-t", choices=["python", "node", "custom"], default="python")
    p_sup.add_argument("--name", default="mcp-server")
    p_sup.add_argument("--port", "-p", type=int, default=8000)
    p_sup.add_argument("--max-restarts", type=int, default=3)
    p_sup.add_argument("--no-health-check", action="store_true", help="Disable periodic health probes")
    p_sup.set_defaults(func=cmd_supervise)

    p_conn = sub.add_parser("connect", help="Connect, discover tools and print them")
    p_conn.add_argument("--url", "-u", default="http://localhost:8001")
    p_conn.add_argument("--type", "-t", choices=["http", "sse", "websocket"], default="sse")
    p_conn.set_defaults(func=cmd_connect)

    p_call = sub.add_parser("call", help="Invoke one tool method")
    p_call.add_argument("tool", help="Method to call (e.g. echo_tool or tools/list)")
    p_call.add_argument("--url", "-u", default="http://localhost:8001")
    p_call.add_argument("--params", default="{}", help="JSON object of arguments")
    p_call.add_argument("--timeout", type=float, default=30.0)
    p_call.add_argument("--output", "-o", choices=["result", "full", "custom"], default="result")
    p_call.set_defaults(func=cmd_call)

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    sys.exit(asyncio.run(args.func(args)))


if __name__ == "__main__":
    main()
