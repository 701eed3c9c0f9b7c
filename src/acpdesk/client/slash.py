"""Client-side slash command registry and dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from acpdesk.client.display import print_error, print_notice, print_status, print_traffic
from acpdesk.client.state import UIState
from acpdesk.errors import RpcError
from acpdesk.session.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

SlashHandler = Callable[[SessionOrchestrator, UIState, str], Awaitable[bool] | bool]

TRAFFIC_FILTERS = ("all", "requests", "responses", "notifications")


@dataclass
class SlashCommandDef:
    description: str
    hint: str
    handler: SlashHandler


SLASH_HANDLERS: dict[str, SlashCommandDef] = {}


def register_slash_command(name: str, description: str, hint: str) -> Callable[[SlashHandler], SlashHandler]:
    """Decorator to register a slash command."""

    def _decorator(func: SlashHandler) -> SlashHandler:
        SLASH_HANDLERS[name] = SlashCommandDef(description=description, hint=hint, handler=func)
        return func

    return _decorator


@register_slash_command("/help", description="Show available slash commands.", hint="/help")
def _handle_help(orchestrator: SessionOrchestrator, _state: UIState, _argument: str) -> bool:
    lines = ["Available slash commands:"]
    lines.extend(f"{entry.hint:<28} - {entry.description}" for entry in SLASH_HANDLERS.values())
    for command in orchestrator.assembler.available_commands:
        name = f"/{command.name}"
        if name in SLASH_HANDLERS:
            continue
        label = command.description or command.hint or "Handled by agent"
        lines.append(f"{name:<28} - {label}")
    print_notice("\n".join(lines), style="white")
    return True


@register_slash_command("/status", description="Show session, mode, model and MCP servers.", hint="/status")
def _handle_status(orchestrator: SessionOrchestrator, state: UIState, _argument: str) -> bool:
    print_status(orchestrator, state)
    return True


@register_slash_command("/mode", description="Show or set the agent mode.", hint="/mode [id]")
async def _handle_mode(orchestrator: SessionOrchestrator, _state: UIState, argument: str) -> bool:
    modes = orchestrator.assembler.available_modes
    if not argument:
        available = ", ".join(mode.id for mode in modes) or "none advertised"
        print_notice(f"Current mode: {orchestrator.current_mode_id or 'unknown'}. Available: {available}")
        return True
    selection = argument.split()[0]
    if modes and selection not in {mode.id for mode in modes}:
        print_error(f"[unknown mode: {selection}]")
        return True
    try:
        await orchestrator.set_mode(selection)
    except RpcError as exc:
        print_error(f"[failed to set mode: {exc.message}]")
        return True
    print_notice(f"[mode set to {selection}]", style="magenta")
    return True


@register_slash_command("/model", description="Show or set the model.", hint="/model [id]")
async def _handle_model(orchestrator: SessionOrchestrator, _state: UIState, argument: str) -> bool:
    models = orchestrator.assembler.available_models
    if not argument:
        available = ", ".join(model.model_id for model in models) or "none advertised"
        print_notice(f"Current model: {orchestrator.current_model_id or 'unknown'}. Available: {available}")
        return True
    selection = argument.split()[0]
    try:
        await orchestrator.set_model(selection)
    except RpcError as exc:
        print_error(f"[failed to set model: {exc.message}]")
        return True
    print_notice(f"[model set to {selection}]", style="magenta")
    return True


@register_slash_command(
    "/traffic",
    description="Show recorded frames, or clear|pause|resume the log.",
    hint="/traffic [filter] [query]",
)
def _handle_traffic(_orchestrator: SessionOrchestrator, state: UIState, argument: str) -> bool:
    recorder = state.recorder
    if recorder is None:
        print_error("[traffic recording is disabled]")
        return True
    parts = argument.split(maxsplit=1)
    head = parts[0] if parts else ""
    if head == "clear":
        recorder.clear()
        print_notice("[traffic cleared]")
        return True
    if head in ("pause", "resume"):
        if head == "pause":
            recorder.pause()
        else:
            recorder.resume()
        print_notice(f"[traffic {'paused' if recorder.paused else 'recording'}]")
        return True
    kind = "all"
    query = argument
    if head in TRAFFIC_FILTERS:
        kind = head
        query = parts[1] if len(parts) > 1 else ""
    entries = recorder.filtered(kind, query.strip())  # type: ignore[arg-type]
    if not entries:
        print_notice("[no matching traffic]")
        return True
    print_traffic(entries)
    return True


@register_slash_command("/exit", description="Disconnect and exit.", hint="/exit")
@register_slash_command("/quit", description="Disconnect and exit.", hint="/quit")
def _handle_exit(_orchestrator: SessionOrchestrator, _state: UIState, _argument: str) -> bool:
    print_notice("[exiting]")
    raise SystemExit(0)


async def handle_slash_command(line: str, orchestrator: SessionOrchestrator, state: UIState) -> bool:
    """Dispatch client-side slash commands, returning True if handled.

    Unknown commands return False so they are sent to the agent as a prompt.
    """
    trimmed = line.strip()
    if not trimmed.startswith("/"):
        return False

    parts = trimmed.split(maxsplit=1)
    command = parts[0]
    argument = parts[1].strip() if len(parts) > 1 else ""

    entry = SLASH_HANDLERS.get(command)
    if entry is None:
        return False

    try:
        result = entry.handler(orchestrator, state, argument)
        if asyncio.iscoroutine(result):
            return bool(await result)
        return bool(result)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("Slash command failed (%s): %s", command, exc)
        print_error(f"[{command} failed: {exc}]")
        return True
