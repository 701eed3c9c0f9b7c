"""Lightweight UI state shared across client components."""

from __future__ import annotations

from dataclasses import dataclass, field

from acpdesk.bridge.traffic import TrafficRecorder


@dataclass
class UIState:
    agent_name: str = ""
    mcp_servers: list[str] = field(default_factory=list)
    recorder: TrafficRecorder | None = None
    pending_newline: bool = False
    show_thinking: bool = True
    show_status_on_start: bool = True
