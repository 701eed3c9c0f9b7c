"""Answer the requests an agent sends back to the client."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from acp.schema import (
    AllowedOutcome,
    DeniedOutcome,
    ReadTextFileRequest,
    ReadTextFileResponse,
    RequestPermissionRequest,
    RequestPermissionResponse,
    WriteTextFileRequest,
    WriteTextFileResponse,
)
from pydantic import BaseModel, ValidationError

from acpdesk.errors import InvalidParamsError, MethodNotFoundError
from acpdesk.session.arbitrator import InteractionArbitrator
from acpdesk.session.files import FileAccess
from acpdesk.session.models import PermissionChoice, ToolCallRecord

logger = logging.getLogger(__name__)

READ_TEXT_FILE = "fs/read_text_file"
WRITE_TEXT_FILE = "fs/write_text_file"
REQUEST_PERMISSION = "session/request_permission"


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def _validate(model: type[BaseModel], params: Any) -> Any:
    try:
        return model.model_validate(params if params is not None else {})
    except ValidationError as exc:
        raise InvalidParamsError(f"Invalid params: {exc.errors()[:1]}") from exc


class ClientRequestHandler:
    """Dispatcher registered with ``RpcMultiplexer.on_inbound_request``."""

    def __init__(self, file_access: FileAccess, arbitrator: InteractionArbitrator) -> None:
        self.file_access = file_access
        self._arbitrator = arbitrator
        self._routes: dict[str, Callable[[Any], Awaitable[dict[str, Any]]]] = {
            READ_TEXT_FILE: self.read_text_file,
            WRITE_TEXT_FILE: self.write_text_file,
            REQUEST_PERMISSION: self.request_permission,
        }

    async def __call__(self, method: str, params: Any) -> dict[str, Any]:
        route = self._routes.get(method)
        if route is None:
            logger.info("client_request.unsupported method=%s", method)
            raise MethodNotFoundError.for_method(method)
        return await route(params)

    async def read_text_file(self, params: Any) -> dict[str, Any]:
        request = _validate(ReadTextFileRequest, params)
        content = await self.file_access.read_text(request.path, line=request.line, limit=request.limit)
        logger.info("fs.read path=%s line=%s limit=%s", request.path, request.line, request.limit)
        return _dump(ReadTextFileResponse(content=content))

    async def write_text_file(self, params: Any) -> dict[str, Any]:
        request = _validate(WriteTextFileRequest, params)
        await self.file_access.write_text(request.path, request.content)
        logger.info("fs.write path=%s bytes=%s", request.path, len(request.content))
        return _dump(WriteTextFileResponse())

    async def request_permission(self, params: Any) -> dict[str, Any]:
        """Hold the request open until the user picks an option or cancels."""
        request = _validate(RequestPermissionRequest, params)
        tool_call = request.tool_call
        record = ToolCallRecord(
            tool_call_id=tool_call.tool_call_id,
            title=tool_call.title or "",
            kind=str(getattr(tool_call.kind, "value", tool_call.kind) or "other"),
            status=str(getattr(tool_call.status, "value", tool_call.status) or "pending"),  # type: ignore[arg-type]
            locations=[str(loc.path) for loc in tool_call.locations or []],
        )
        options = [
            PermissionChoice(
                option_id=opt.option_id,
                name=opt.name,
                kind=str(getattr(opt.kind, "value", opt.kind)),
            )
            for opt in request.options
        ]
        selection = await self._arbitrator.request_permission(request.session_id, record, options)
        if selection is None:
            return _dump(RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled")))
        return _dump(RequestPermissionResponse(outcome=AllowedOutcome(option_id=selection, outcome="selected")))
