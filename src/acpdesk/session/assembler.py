"""Fold ``session/update`` notifications into an ordered transcript.

Updates are applied one at a time, in arrival order. Text chunks extend the
trailing message while the role stays the same and start a new message when it
changes; tool calls live in a lookup table and as copies inside the message
that announced them, and both copies are updated together.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from acp.schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    AvailableCommandsUpdate,
    CurrentModeUpdate,
    SessionNotification,
    TextContentBlock,
    ToolCallProgress,
    ToolCallStart,
    UserMessageChunk,
)
from pydantic import ValidationError

from acpdesk.session.models import (
    Message,
    ModelInfo,
    PlanItem,
    Role,
    SessionMode,
    SlashCommand,
    ToolCallRecord,
)

logger = logging.getLogger(__name__)

UpdateListener = Callable[[Any], None]


class ConversationAssembler:
    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._tool_calls: dict[str, ToolCallRecord] = {}
        self._listeners: list[UpdateListener] = []
        self.session_id: str | None = None
        self.current_mode_id = ""
        self.available_modes: list[SessionMode] = []
        self.current_model_id = ""
        self.available_models: list[ModelInfo] = []
        self.available_commands: list[SlashCommand] = []
        self.plan: list[PlanItem] = []

    def add_listener(self, listener: UpdateListener) -> None:
        """Call ``listener`` with every update after it has been applied."""
        self._listeners.append(listener)

    def messages(self) -> list[Message]:
        return [message.copy() for message in self._messages]

    def tool_calls(self) -> list[ToolCallRecord]:
        return [record.copy() for record in self._tool_calls.values()]

    def tool_call(self, tool_call_id: str) -> ToolCallRecord | None:
        record = self._tool_calls.get(tool_call_id)
        return record.copy() if record is not None else None

    def __len__(self) -> int:
        return len(self._messages)

    def reset(self) -> None:
        """Drop the transcript, tool calls and plan."""
        self._messages.clear()
        self._tool_calls.clear()
        self.plan = []

    def reset_settings(self) -> None:
        self.current_mode_id = ""
        self.available_modes = []
        self.current_model_id = ""
        self.available_models = []
        self.available_commands = []

    def capture_session_settings(self, result: Any) -> None:
        """Record the mode and model sets advertised by session/new or session/load."""
        if not isinstance(result, dict):
            return
        modes = result.get("modes")
        if isinstance(modes, dict):
            self.available_modes = [
                SessionMode(id=str(m["id"]), name=str(m.get("name") or m["id"]), description=m.get("description"))
                for m in modes.get("availableModes") or []
                if isinstance(m, dict) and m.get("id")
            ]
            self.current_mode_id = str(modes.get("currentModeId") or "")
        models = result.get("models")
        if isinstance(models, dict):
            self.available_models = [
                ModelInfo(
                    model_id=str(m["modelId"]),
                    name=str(m.get("name") or m["modelId"]),
                    description=m.get("description"),
                )
                for m in models.get("availableModels") or []
                if isinstance(m, dict) and m.get("modelId")
            ]
            self.current_model_id = str(models.get("currentModelId") or "")

    def add_user_message(self, text: str) -> Message:
        message = Message(role="user", content=text)
        self._messages.append(message)
        return message.copy()

    def apply_notification(self, params: Any) -> bool:
        """Validate and apply the params of one ``session/update`` notification."""
        try:
            note = SessionNotification.model_validate(params)
        except ValidationError as exc:
            kind = params.get("update", {}).get("sessionUpdate") if isinstance(params, dict) else None
            logger.info("session_update.ignored kind=%s reason=%s", kind, exc.errors()[:1])
            return False
        if self.session_id and note.session_id != self.session_id:
            logger.info("session_update.ignored reason=foreign_session session=%s", note.session_id)
            return False
        return self.apply_update(note.update)

    def apply_update(self, update: Any) -> bool:
        if isinstance(update, UserMessageChunk):
            self._append_text("user", update.content)
        elif isinstance(update, AgentMessageChunk):
            self._append_text("assistant", update.content)
        elif isinstance(update, AgentThoughtChunk):
            self._append_thought(update.content)
        elif isinstance(update, ToolCallStart):
            self._start_tool_call(update)
        elif isinstance(update, ToolCallProgress):
            self._update_tool_call(update)
        elif isinstance(update, CurrentModeUpdate):
            self.current_mode_id = update.current_mode_id
        elif isinstance(update, AvailableCommandsUpdate):
            self.available_commands = [_slash_command(cmd) for cmd in update.available_commands or []]
        elif isinstance(update, AgentPlanUpdate):
            self.plan = [
                PlanItem(content=str(entry.content), status=_plain(entry.status), priority=_plain(entry.priority))
                for entry in update.entries or []
            ]
        else:
            logger.info("session_update.unhandled kind=%s", getattr(update, "session_update", type(update).__name__))
            return False
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:  # noqa: BLE001
                logger.exception("session_update.listener_failed")
        return True

    def _trailing(self, role: Role) -> Message | None:
        if self._messages and self._messages[-1].role == role:
            return self._messages[-1]
        return None

    def _append_text(self, role: Role, content: Any) -> None:
        text = _text_of(content)
        message = self._trailing(role)
        if message is None:
            self._messages.append(Message(role=role, content=text or ""))
        elif text is not None:
            message.content += text

    def _append_thought(self, content: Any) -> None:
        text = _text_of(content)
        message = self._trailing("assistant")
        if message is None:
            self._messages.append(Message(role="assistant", content="", thought=text or ""))
        elif text is not None:
            message.thought = (message.thought or "") + text

    def _start_tool_call(self, update: ToolCallStart) -> None:
        tool_call_id = update.tool_call_id
        existing = self._tool_calls.get(tool_call_id)
        if existing is not None:
            self._apply_fields(
                tool_call_id,
                title=update.title,
                status=update.status,
                kind=update.kind,
                locations=_locations(update.locations),
            )
            return
        record = ToolCallRecord(
            tool_call_id=tool_call_id,
            title=update.title or "",
            kind=_plain(update.kind) or "other",
            status=_plain(update.status) or "pending",
            locations=_locations(update.locations) or [],
        )
        self._tool_calls[tool_call_id] = record
        message = self._trailing("assistant")
        if message is None:
            message = Message(role="assistant")
            self._messages.append(message)
        message.tool_calls.append(record.copy())

    def _update_tool_call(self, update: ToolCallProgress) -> None:
        if update.tool_call_id not in self._tool_calls:
            logger.debug("tool_call_update.unknown id=%s", update.tool_call_id)
            return
        self._apply_fields(update.tool_call_id, title=update.title, status=update.status)

    def _apply_fields(self, tool_call_id: str, **fields: Any) -> None:
        changes = {key: value for key, value in fields.items() if value}
        targets = [self._tool_calls[tool_call_id]]
        for message in self._messages:
            targets.extend(call for call in message.tool_calls if call.tool_call_id == tool_call_id)
        for record in targets:
            for key, value in changes.items():
                setattr(record, key, list(value) if key == "locations" else _plain(value))


def _plain(value: Any) -> str:
    """Literal or enum field value as a plain string."""
    if value is None:
        return ""
    return str(getattr(value, "value", value))


def _text_of(content: Any) -> str | None:
    if isinstance(content, TextContentBlock):
        return content.text
    return None


def _locations(raw: Any) -> list[str] | None:
    if not raw:
        return None
    return [str(getattr(location, "path", location)) for location in raw]


def _slash_command(cmd: Any) -> SlashCommand:
    hint = None
    command_input = getattr(cmd, "input", None)
    if command_input is not None:
        hint = getattr(getattr(command_input, "root", command_input), "hint", None)
    return SlashCommand(name=str(cmd.name), description=str(cmd.description or ""), hint=hint)
