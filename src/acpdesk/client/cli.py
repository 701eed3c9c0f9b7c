"""Command-line entry point: pick an agent, connect and run the REPL."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Any

from dotenv import load_dotenv

from acpdesk import __version__
from acpdesk.bridge.launcher import ProcessLauncher
from acpdesk.bridge.traffic import TrafficRecorder
from acpdesk.client.display import UpdatePrinter, print_agents, print_error, print_notice, print_sessions
from acpdesk.client.interaction import InteractivePrompter
from acpdesk.client.mcp_config import load_mcp_config, server_name
from acpdesk.client.repl import interactive_loop
from acpdesk.client.state import UIState
from acpdesk.config import UnknownAgentError, load_agents_config, watch_agents_config
from acpdesk.errors import ConnectionCancelled, RpcError
from acpdesk.log_utils import build_log_config, configure_logging
from acpdesk.paths import config_dir
from acpdesk.session.orchestrator import SessionOrchestrator
from acpdesk.store import JsonSessionStore
from acpdesk.telemetry import Telemetry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="acpdesk", description="Chat with ACP agents over stdio.")
    parser.add_argument("--agent", help="Registered agent name (see --list-agents)")
    parser.add_argument("--cwd", help="Working directory for the session (defaults to the current directory)")
    parser.add_argument("--resume", metavar="ID", help="Resume a saved session by id or id prefix")
    parser.add_argument("--list-agents", action="store_true", help="List registered agents and exit")
    parser.add_argument("--list-sessions", action="store_true", help="List saved sessions and exit")
    parser.add_argument(
        "--mcp-config",
        type=str,
        help="Path to JSON file containing an mcpServers array (stdio/http/sse entries).",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def main(argv: list[str]) -> int:
    load_dotenv(config_dir() / ".env", override=False)
    load_dotenv()
    configure_logging(build_log_config())

    args = build_parser().parse_args(argv[1:])
    try:
        agents = load_agents_config()
    except ValueError as exc:
        print_error(str(exc))
        return 2
    store = JsonSessionStore.default()

    if args.list_agents:
        print_agents(agents)
        return 0
    if args.list_sessions:
        print_sessions(store.list())
        return 0

    saved = None
    if args.resume:
        saved = store.find(args.resume)
        if saved is None:
            print_error(f"No saved session matches '{args.resume}'")
            return 2
        if not saved.supports_resume:
            print_error(f"Agent '{saved.agent_name}' cannot resume sessions")
            return 2
        if args.cwd:
            saved.cwd = os.path.abspath(args.cwd)

    agent_name = saved.agent_name if saved is not None else args.agent or next(iter(agents.names()), None)
    if agent_name is None:
        print_error("No agents are registered")
        return 2
    try:
        agents.get(agent_name)
    except UnknownAgentError as exc:
        print_error(str(exc))
        return 2

    mcp_servers: list[Any] = load_mcp_config(args.mcp_config) if args.mcp_config else []
    recorder = TrafficRecorder()
    launcher = ProcessLauncher(agents)
    orchestrator = SessionOrchestrator(
        launcher,
        persistence=store,
        recorder=recorder,
        telemetry=Telemetry(enabled=os.getenv("ACPDESK_TELEMETRY", "1") != "0"),
        mcp_servers=mcp_servers,
    )
    state = UIState(
        agent_name=agent_name,
        mcp_servers=[server_name(server) for server in mcp_servers],
        recorder=recorder,
    )
    InteractivePrompter(orchestrator.arbitrator)
    orchestrator.assembler.add_listener(UpdatePrinter(state, orchestrator.assembler))

    print_notice(f"Connecting to {agent_name}...")
    try:
        if saved is not None:
            await orchestrator.resume_session(saved)
        else:
            await orchestrator.create_session(agent_name, os.path.abspath(args.cwd or os.getcwd()))
    except ConnectionCancelled as exc:
        print_notice(f"[{exc.message}]", style="yellow")
        return 1
    except (RpcError, OSError) as exc:
        print_error(f"Failed to connect to {agent_name}: {getattr(exc, 'message', None) or exc}")
        for line in orchestrator.startup_logs[-5:]:
            print_notice(f"  {line}", style="dim")
        return 1

    stop_watch = asyncio.Event()
    watcher = asyncio.ensure_future(watch_agents_config(launcher.update_agents, stop_event=stop_watch))
    try:
        await interactive_loop(orchestrator, state)
        return 0
    finally:
        stop_watch.set()
        await watcher
        await orchestrator.disconnect()


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main(sys.argv)))
    except KeyboardInterrupt:
        raise SystemExit(130)
