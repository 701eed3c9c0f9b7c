"""Saved-session list kept on disk so conversations can be resumed later."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from acpdesk.paths import state_dir
from acpdesk.session.models import Session

logger = logging.getLogger(__name__)

SESSIONS_FILE_NAME = "sessions.json"


class SessionPersistence(Protocol):
    def list(self) -> list[Session]: ...

    def save(self, sessions: list[Session]) -> None: ...


@dataclass
class JsonSessionStore:
    """Keep saved sessions as a JSON array of records."""

    path: Path

    @classmethod
    def default(cls) -> "JsonSessionStore":
        return cls(state_dir() / SESSIONS_FILE_NAME)

    def list(self) -> list[Session]:  # noqa: A003 - persistence interface name
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("sessions.load_failed path=%s error=%s", self.path, exc)
            return []
        if isinstance(raw, dict):
            raw = raw.get("sessions", [])
        sessions: list[Session] = []
        for entry in raw if isinstance(raw, list) else []:
            try:
                sessions.append(Session.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("sessions.invalid_entry error=%s", exc)
        return sessions

    def save(self, sessions: list[Session]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"sessions": [session.to_dict() for session in sessions]}
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def delete(self, local_id: str) -> list[Session]:
        sessions = [session for session in self.list() if session.id != local_id]
        self.save(sessions)
        return sessions

    def resumable(self) -> list[Session]:
        """Sessions whose agent advertised session/load support."""
        return [session for session in self.list() if session.supports_resume]

    def find(self, key: str) -> Session | None:
        """Look a saved session up by agent session id, local id or local id prefix."""
        sessions = self.list()
        for session in sessions:
            if key in (session.id, session.session_id):
                return session
        matches = [session for session in sessions if key and session.id.startswith(key)]
        return matches[0] if len(matches) == 1 else None
