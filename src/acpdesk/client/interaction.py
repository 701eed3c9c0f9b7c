"""Ask the user to answer permission and authentication questions."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from prompt_toolkit import PromptSession  # type: ignore

from acpdesk.client.display import print_notice
from acpdesk.session.arbitrator import InteractionArbitrator
from acpdesk.session.models import PendingAuthChoice, PendingPermission

logger = logging.getLogger(__name__)

AskFunc = Callable[[str], Awaitable[str]]


def parse_choice(answer: str, count: int) -> int | None:
    """Map a 1-based numeric answer to an index; anything else means cancel."""
    answer = answer.strip()
    if not answer.isdigit():
        return None
    index = int(answer) - 1
    return index if 0 <= index < count else None


async def _prompt_ask(message: str) -> str:
    session: PromptSession = PromptSession()
    try:
        return await session.prompt_async(message)
    except (EOFError, KeyboardInterrupt):
        return ""


class InteractivePrompter:
    """Bridge arbitrator questions to terminal prompts.

    Listeners fire synchronously from the protocol path, so each question is
    asked from its own task and answered back into the arbitrator.
    """

    def __init__(self, arbitrator: InteractionArbitrator, ask: AskFunc | None = None) -> None:
        self._arbitrator = arbitrator
        self._ask = ask or _prompt_ask
        self._tasks: set[asyncio.Task[None]] = set()
        arbitrator.on_permission_needed(self._spawn_permission)
        arbitrator.on_auth_choice_needed(self._spawn_auth)

    async def ask_permission(self, pending: PendingPermission) -> None:
        tool = pending.tool_call
        lines = [f"[permission] {tool.title or tool.tool_call_id} ({tool.kind})"]
        lines.extend(f"{idx}) {option.name}" for idx, option in enumerate(pending.options, start=1))
        print_notice("\n".join(lines), style="yellow")
        answer = await self._ask("Permission choice (number, empty to cancel): ")
        index = parse_choice(answer, len(pending.options))
        if index is None:
            self._arbitrator.cancel_permission()
            return
        self._arbitrator.resolve_permission(pending.options[index].option_id)

    async def ask_auth(self, pending: PendingAuthChoice) -> None:
        lines = [f"{pending.agent_name} requires authentication. Available methods:"]
        for idx, method in enumerate(pending.methods, start=1):
            label = f"{idx}) {method.name or method.id} ({method.id})"
            if method.description:
                label = f"{label} - {method.description}"
            lines.append(label)
        print_notice("\n".join(lines), style="yellow")
        answer = await self._ask("Authentication method (number, empty to cancel): ")
        index = parse_choice(answer, len(pending.methods))
        if index is None:
            self._arbitrator.cancel_auth_selection()
            return
        self._arbitrator.select_auth_method(pending.methods[index].id)

    def _spawn_permission(self, pending: PendingPermission) -> None:
        self._spawn(self.ask_permission(pending))

    def _spawn_auth(self, pending: PendingAuthChoice) -> None:
        self._spawn(self.ask_auth(pending))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("interaction.prompt_failed error=%s", task.exception())
