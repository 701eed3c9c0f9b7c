"""Plain records exposed to the surrounding application."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Literal

Role = Literal["user", "assistant", "system"]
ToolCallStatus = Literal["pending", "in_progress", "completed", "failed"]

TITLE_MAX_CHARS = 50


def _now() -> float:
    return time.time()


def derive_title(prompt_text: str) -> str:
    """Session title taken from the first prompt, cut at 50 characters."""
    text = prompt_text.strip()
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


def default_title(timestamp: float | None = None) -> str:
    return "Session " + time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(_now() if timestamp is None else timestamp))


@dataclass
class Session:
    """One resumable conversation with an agent.

    ``session_id``, ``agent_name`` and ``cwd`` never change once the session
    exists; ``title`` and ``last_updated`` follow the conversation.
    """

    session_id: str
    agent_name: str
    cwd: str
    supports_resume: bool = False
    title: str = ""
    last_updated: float = field(default_factory=_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "agentName": self.agent_name,
            "cwd": self.cwd,
            "supportsLoadSession": self.supports_resume,
            "title": self.title,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            session_id=str(data["sessionId"]),
            agent_name=str(data["agentName"]),
            cwd=str(data.get("cwd") or ""),
            supports_resume=bool(data.get("supportsLoadSession", False)),
            title=str(data.get("title") or ""),
            last_updated=float(data.get("lastUpdated") or 0.0),
        )


@dataclass
class ToolCallRecord:
    tool_call_id: str
    title: str = ""
    kind: str = "other"
    status: ToolCallStatus = "pending"
    locations: list[str] = field(default_factory=list)

    def copy(self) -> "ToolCallRecord":
        return replace(self, locations=list(self.locations))


@dataclass
class Message:
    role: Role
    content: str = ""
    thought: str | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    timestamp: float = field(default_factory=_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def copy(self) -> "Message":
        return replace(self, tool_calls=[call.copy() for call in self.tool_calls])


@dataclass(frozen=True)
class SessionMode:
    id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class ModelInfo:
    model_id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class SlashCommand:
    name: str
    description: str = ""
    hint: str | None = None


@dataclass(frozen=True)
class PlanItem:
    content: str
    status: str = "pending"
    priority: str = "medium"


@dataclass(frozen=True)
class PermissionChoice:
    option_id: str
    name: str
    kind: str


@dataclass
class PendingPermission:
    session_id: str
    tool_call: ToolCallRecord
    options: list[PermissionChoice]


@dataclass(frozen=True)
class AuthMethodInfo:
    id: str
    name: str
    description: str | None = None


@dataclass
class PendingAuthChoice:
    agent_name: str
    methods: list[AuthMethodInfo]
