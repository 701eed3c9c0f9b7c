"""Agent registry: which external programs can be launched as ACP agents.

The registry lives in ``agents.json`` under the user config dir and is created
with a few well-known agents on first use. ``ACPDESK_AGENTS_FILE`` points it
somewhere else.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable

from watchfiles import Change, awatch

from acpdesk.paths import config_dir

logger = logging.getLogger(__name__)

AGENTS_FILE_NAME = "agents.json"

DEFAULT_AGENTS: Dict[str, Dict[str, Any]] = {
    "GitHub Copilot": {
        "command": "npx",
        "args": ["@github/copilot-language-server@latest", "--acp"],
    },
    "Claude Code": {
        "command": "npx",
        "args": ["@zed-industries/claude-code-acp@latest"],
    },
    "Gemini CLI": {
        "command": "npx",
        "args": ["@google/gemini-cli@latest", "--experimental-acp"],
    },
    "Qwen Code": {
        "command": "npx",
        "args": ["@qwen-code/qwen-code@latest", "--acp", "--experimental-skills"],
    },
}


class UnknownAgentError(KeyError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Agent '{self.name}' not found"


@dataclass
class AgentConfig:
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        command = data.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ValueError("agent entry requires a non-empty 'command'")
        args = data.get("args") or []
        env = data.get("env") or {}
        return cls(
            command=command,
            args=[str(arg) for arg in args] if isinstance(args, list) else [],
            env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if not self.env:
            data.pop("env")
        return data


@dataclass
class AgentsConfig:
    """Ordered mapping of display name to launch command."""

    agents: Dict[str, AgentConfig] = field(default_factory=dict)

    @classmethod
    def defaults(cls) -> "AgentsConfig":
        return cls({name: AgentConfig.from_dict(entry) for name, entry in DEFAULT_AGENTS.items()})

    @classmethod
    def from_dict(cls, data: Any) -> "AgentsConfig":
        agents: Dict[str, AgentConfig] = {}
        raw = data.get("agents") if isinstance(data, dict) else None
        if not isinstance(raw, dict):
            return cls(agents)
        for name, entry in raw.items():
            if not isinstance(entry, dict):
                continue
            try:
                agents[str(name)] = AgentConfig.from_dict(entry)
            except ValueError as exc:
                logger.warning("agents.invalid_entry name=%s error=%s", name, exc)
        return cls(agents)

    def to_dict(self) -> Dict[str, Any]:
        return {"agents": {name: agent.to_dict() for name, agent in self.agents.items()}}

    def get(self, name: str) -> AgentConfig:
        try:
            return self.agents[name]
        except KeyError:
            raise UnknownAgentError(name) from None

    def names(self) -> list[str]:
        return list(self.agents)


def agents_file() -> Path:
    override = os.getenv("ACPDESK_AGENTS_FILE")
    if override:
        path = Path(override).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        return path
    return config_dir() / AGENTS_FILE_NAME


def load_agents_config(path: Path | None = None) -> AgentsConfig:
    """Load the registry, writing the defaults when the file does not exist yet."""
    path = path or agents_file()
    if not path.exists():
        config = AgentsConfig.defaults()
        save_agents_config(config, path)
        return config
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("agents.load_failed path=%s error=%s", path, exc)
        raise ValueError(f"Could not read agent config {path}: {exc}") from exc
    return AgentsConfig.from_dict(data)


def save_agents_config(config: AgentsConfig, path: Path | None = None) -> None:
    path = path or agents_file()
    path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")


def add_agent(name: str, agent: AgentConfig, path: Path | None = None) -> AgentsConfig:
    config = load_agents_config(path)
    config.agents[name] = agent
    save_agents_config(config, path)
    return config


def remove_agent(name: str, path: Path | None = None) -> AgentsConfig:
    config = load_agents_config(path)
    config.agents.pop(name, None)
    save_agents_config(config, path)
    return config


def update_agent(name: str, agent: AgentConfig, path: Path | None = None) -> AgentsConfig:
    config = load_agents_config(path)
    if name not in config.agents:
        raise UnknownAgentError(name)
    config.agents[name] = agent
    save_agents_config(config, path)
    return config


def get_agent(name: str, path: Path | None = None) -> AgentConfig:
    return load_agents_config(path).get(name)


def reload_on_change(changes: Iterable[tuple[Change, str]], path: Path) -> AgentsConfig | None:
    """Re-read ``path`` if a batch of file changes added or modified it.

    Returns None when the file was not touched, was deleted, or no longer parses;
    the caller keeps its current registry in that case.
    """
    target = path.resolve()
    touched = any(
        change in (Change.added, Change.modified) and Path(changed).resolve() == target
        for change, changed in changes
    )
    if not touched or not path.exists():
        return None
    try:
        config = load_agents_config(path)
    except ValueError as exc:
        logger.warning("agents.reload_skipped path=%s error=%s", path, exc)
        return None
    logger.info("agents.reloaded path=%s agents=%d", path, len(config.agents))
    return config


async def watch_agents_config(
    on_change: Callable[[AgentsConfig], Any],
    path: Path | None = None,
    *,
    stop_event: asyncio.Event | None = None,
    **watch_kwargs: Any,
) -> None:
    """Push a fresh registry to ``on_change`` each time ``agents.json`` is rewritten."""
    path = path or agents_file()
    logger.debug("agents.watch path=%s", path)
    async for changes in awatch(path.parent, stop_event=stop_event, **watch_kwargs):
        config = reload_on_change(changes, path)
        if config is None:
            continue
        result = on_change(config)
        if inspect.isawaitable(result):
            await result
