"""Spawn registered agents as stdio subprocess channels."""

from __future__ import annotations

import logging
from typing import Callable

from acpdesk.bridge.channel import ProcessChannel
from acpdesk.config import AgentsConfig, load_agents_config

logger = logging.getLogger(__name__)


class ProcessLauncher:
    """Turn an agent name into a running ProcessChannel."""

    def __init__(self, agents: AgentsConfig | None = None) -> None:
        self._agents = agents

    def update_agents(self, agents: AgentsConfig) -> None:
        """Use a reloaded registry for launches from now on."""
        self._agents = agents

    @property
    def agents(self) -> AgentsConfig:
        if self._agents is None:
            self._agents = load_agents_config()
        return self._agents

    async def __call__(
        self,
        agent_name: str,
        *,
        cwd: str | None = None,
        on_stderr: Callable[[str], None] | None = None,
    ) -> ProcessChannel:
        agent = self.agents.get(agent_name)
        logger.info("agent.launch name=%s cwd=%s", agent_name, cwd)
        channel = await ProcessChannel.spawn(
            agent.command,
            agent.args,
            name=agent_name,
            env=agent.env,
            cwd=cwd,
        )
        if on_stderr is not None:
            channel.on_stderr(on_stderr)
        return channel
