"""Shared rich console utilities for client output."""

from __future__ import annotations

import json
from datetime import datetime
from io import StringIO
from threading import Lock
from typing import Any, Iterable

from acp.schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    CurrentModeUpdate,
    TextContentBlock,
    ToolCallProgress,
    ToolCallStart,
)
from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.table import Table
from rich.text import Text

from acpdesk.bridge.traffic import TrafficEntry
from acpdesk.client.state import UIState
from acpdesk.config import AgentsConfig
from acpdesk.session.assembler import ConversationAssembler
from acpdesk.session.models import PlanItem, Session

_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()

_TOOL_STYLES = {"completed": "green", "in_progress": "yellow", "pending": "yellow", "failed": "red"}
_PLAN_STYLES = {"completed": "green", "in_progress": "orange1", "pending": "orange1"}


def render_to_text(*args: Any, **kwargs: Any) -> str:
    """Render rich objects to an ANSI string."""
    kwargs.setdefault("end", "\n")
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        return _render_buffer.getvalue()


def _render_and_print(*args: Any, **kwargs: Any) -> bool:
    output = render_to_text(*args, **kwargs)
    if output:
        print_formatted_text(ANSI(output), end="")
        return output.endswith("\n")
    return False


def print_notice(text: str, style: str = "cyan") -> None:
    _render_and_print(Text(text, style=style))


def print_error(text: str) -> None:
    _render_and_print(Text(text, style="red"))


def print_mode_update(mode: str) -> None:
    _render_and_print(Text(f"[mode -> {mode}]", style="magenta"))


def print_tool(status: str, message: str) -> None:
    style = _TOOL_STYLES.get(status.lower(), "red")
    _render_and_print(Text(f"Tool[{status}]: {message}", style=style))


def print_agent_text(text: str) -> None:
    _render_and_print(Text.from_ansi(text) if "\x1b" in text else Text(text), end="")


def print_thought(text: str) -> None:
    _render_and_print(Text(text, style="#aaaaaa"), end="")


def print_plan(entries: Iterable[PlanItem]) -> None:
    """Render plan entries with a status dot."""
    table = Table(show_header=False, box=None, border_style="cyan")
    table.add_column("", width=2, style="cyan")
    table.add_column("Item", style="white")
    for entry in entries:
        style = _PLAN_STYLES.get(entry.status, "orange1")
        table.add_row(Text("•", style=style), entry.content.strip())
    _render_and_print(table)


class UpdatePrinter:
    """Assembler listener that echoes applied updates to the terminal."""

    def __init__(self, state: UIState, assembler: ConversationAssembler) -> None:
        self._state = state
        self._assembler = assembler

    def __call__(self, update: Any) -> None:
        if isinstance(update, AgentMessageChunk):
            content = update.content
            text = content.text if isinstance(content, TextContentBlock) else f"<{getattr(content, 'type', 'content')}>"
            print_agent_text(text)
            self._state.pending_newline = True
            return
        if isinstance(update, AgentThoughtChunk):
            if self._state.show_thinking and isinstance(update.content, TextContentBlock):
                self._break_line()
                print_thought(update.content.text)
                self._state.pending_newline = True
            return
        if isinstance(update, (ToolCallStart, ToolCallProgress)):
            self._break_line()
            record = self._assembler.tool_call(update.tool_call_id)
            if record is not None:
                print_tool(record.status, record.title or record.tool_call_id)
            return
        if isinstance(update, AgentPlanUpdate):
            self._break_line()
            print_plan(self._assembler.plan)
            return
        if isinstance(update, CurrentModeUpdate):
            self._break_line()
            print_mode_update(update.current_mode_id)

    def _break_line(self) -> None:
        if self._state.pending_newline:
            print_formatted_text("")
            self._state.pending_newline = False


def status_table(orchestrator: Any, state: UIState) -> Table:
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    session = orchestrator.session
    table.add_row("State", orchestrator.state.value)
    table.add_row("Agent", state.agent_name or "-")
    table.add_row("Session", session.session_id if session else "-")
    table.add_row("Title", session.title if session else "-")
    table.add_row("Directory", session.cwd if session else "-")
    table.add_row("Mode", orchestrator.current_mode_id or "unknown")
    table.add_row("Model", orchestrator.current_model_id or "unknown")
    table.add_row("MCP", ", ".join(state.mcp_servers) or "none")
    if orchestrator.last_stop_reason:
        table.add_row("Last stop", orchestrator.last_stop_reason)
    if orchestrator.last_error:
        table.add_row("Last error", orchestrator.last_error)
    return table


def print_status(orchestrator: Any, state: UIState) -> None:
    _render_and_print(status_table(orchestrator, state))


def traffic_table(entries: Iterable[TrafficEntry]) -> Table:
    table = Table(box=None)
    table.add_column("Time", style="dim")
    table.add_column("Dir")
    table.add_column("Type")
    table.add_column("Method", style="cyan")
    table.add_column("Id")
    table.add_column("Payload", overflow="fold")
    for entry in entries:
        arrow = Text("->", style="green") if entry.direction == "out" else Text("<-", style="blue")
        payload = json.dumps(entry.payload, ensure_ascii=False)
        if len(payload) > 200:
            payload = payload[:197] + "..."
        table.add_row(
            datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S"),
            arrow,
            Text(entry.type, style="red" if entry.error else ""),
            entry.method,
            "" if entry.request_id is None else str(entry.request_id),
            payload,
        )
    return table


def print_traffic(entries: Iterable[TrafficEntry]) -> None:
    _render_and_print(traffic_table(entries))


def print_agents(config: AgentsConfig) -> None:
    table = Table(box=None)
    table.add_column("Agent", style="cyan")
    table.add_column("Command")
    for name in config.names():
        agent = config.agents[name]
        table.add_row(name, " ".join([agent.command, *agent.args]))
    _render_and_print(table)


def print_sessions(sessions: Iterable[Session]) -> None:
    table = Table(box=None)
    table.add_column("Id", style="cyan")
    table.add_column("Agent")
    table.add_column("Title")
    table.add_column("Updated", style="dim")
    table.add_column("Resumable")
    for session in sessions:
        table.add_row(
            session.id[:8],
            session.agent_name,
            session.title,
            datetime.fromtimestamp(session.last_updated).strftime("%Y-%m-%d %H:%M"),
            "yes" if session.supports_resume else "no",
        )
    _render_and_print(table)
