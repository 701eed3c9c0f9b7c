"""Hold protocol progress until a human answers a permission or auth question.

Each kind of question has a single slot. The caller suspends on a future
while the application shows the question and later calls the matching
``resolve``/``cancel`` entry point. A second question of the same kind while
one is open is rejected with InteractionBusyError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from acpdesk.errors import InteractionBusyError
from acpdesk.session.models import (
    AuthMethodInfo,
    PendingAuthChoice,
    PendingPermission,
    PermissionChoice,
    ToolCallRecord,
)

logger = logging.getLogger(__name__)

PermissionListener = Callable[[PendingPermission], None]
AuthChoiceListener = Callable[[PendingAuthChoice], None]


class InteractionArbitrator:
    def __init__(self) -> None:
        self._permission: PendingPermission | None = None
        self._permission_future: asyncio.Future[str | None] | None = None
        self._auth: PendingAuthChoice | None = None
        self._auth_future: asyncio.Future[str | None] | None = None
        self._permission_listeners: list[PermissionListener] = []
        self._auth_listeners: list[AuthChoiceListener] = []

    @property
    def pending_permission(self) -> PendingPermission | None:
        return self._permission

    @property
    def pending_auth(self) -> PendingAuthChoice | None:
        return self._auth

    def on_permission_needed(self, listener: PermissionListener) -> None:
        self._permission_listeners.append(listener)

    def on_auth_choice_needed(self, listener: AuthChoiceListener) -> None:
        self._auth_listeners.append(listener)

    async def request_permission(
        self,
        session_id: str,
        tool_call: ToolCallRecord,
        options: list[PermissionChoice],
    ) -> str | None:
        """Wait for the chosen option id, or None if the request was cancelled."""
        if self._permission is not None:
            logger.warning(
                "permission.rejected reason=busy pending=%s incoming=%s",
                self._permission.tool_call.tool_call_id,
                tool_call.tool_call_id,
            )
            raise InteractionBusyError("A permission request is already awaiting a decision")
        future: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        self._permission = PendingPermission(session_id=session_id, tool_call=tool_call, options=list(options))
        self._permission_future = future
        logger.info(
            "permission.request session=%s tool=%s options=%s",
            session_id,
            tool_call.title or tool_call.tool_call_id,
            [opt.option_id for opt in options],
        )
        self._notify(self._permission_listeners, self._permission)
        try:
            return await future
        finally:
            if self._permission_future is future:
                self._permission = None
                self._permission_future = None

    def resolve_permission(self, option_id: str) -> bool:
        future = self._permission_future
        if future is None or future.done():
            return False
        logger.info("permission.response selection=%s", option_id)
        future.set_result(option_id)
        self._permission = None
        self._permission_future = None
        return True

    def cancel_permission(self) -> bool:
        future = self._permission_future
        if future is None or future.done():
            return False
        logger.info("permission.response selection=<cancelled>")
        future.set_result(None)
        self._permission = None
        self._permission_future = None
        return True

    async def request_auth_method(self, agent_name: str, methods: list[AuthMethodInfo]) -> str | None:
        """Wait for the chosen auth method id, or None if the user backed out."""
        if self._auth is not None:
            raise InteractionBusyError("An authentication choice is already pending")
        future: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        self._auth = PendingAuthChoice(agent_name=agent_name, methods=list(methods))
        self._auth_future = future
        logger.info("auth.choice_needed agent=%s methods=%s", agent_name, [m.id for m in methods])
        self._notify(self._auth_listeners, self._auth)
        try:
            return await future
        finally:
            if self._auth_future is future:
                self._auth = None
                self._auth_future = None

    def select_auth_method(self, method_id: str) -> bool:
        future = self._auth_future
        if future is None or future.done():
            return False
        future.set_result(method_id)
        self._auth = None
        self._auth_future = None
        return True

    def cancel_auth_selection(self) -> bool:
        future = self._auth_future
        if future is None or future.done():
            return False
        future.set_result(None)
        self._auth = None
        self._auth_future = None
        return True

    def cancel_all(self) -> None:
        self.cancel_permission()
        self.cancel_auth_selection()

    @staticmethod
    def _notify(listeners: list, pending: object) -> None:
        for listener in list(listeners):
            try:
                listener(pending)
            except Exception:  # noqa: BLE001
                logger.exception("interaction.listener_failed")
