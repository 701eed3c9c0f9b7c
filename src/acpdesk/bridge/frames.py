"""Wire frames exchanged with an agent: requests, responses and notifications."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from acpdesk.errors import FrameError

JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]


@dataclass
class Request:
    id: RequestId
    method: str
    params: Any = None

    kind = "request"

    def to_payload(self) -> dict[str, Any]:
        return {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method, "params": _params(self.params)}


@dataclass
class Response:
    id: RequestId
    result: Any = None
    error: dict[str, Any] | None = None

    kind = "response"

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result
        return payload


@dataclass
class Notification:
    method: str
    params: Any = None

    kind = "notification"

    def to_payload(self) -> dict[str, Any]:
        return {"jsonrpc": JSONRPC_VERSION, "method": self.method, "params": _params(self.params)}


Frame = Union[Request, Response, Notification]


def _params(params: Any) -> Any:
    return {} if params is None else params


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to a single line (no trailing newline)."""
    return json.dumps(frame.to_payload(), ensure_ascii=False, separators=(",", ":"))


def parse_frame(line: str) -> Frame:
    """Classify one raw inbound line.

    A frame with an id and no method is a response, id plus method is a
    request, method without id is a notification. Anything else raises
    FrameError.
    """
    try:
        payload = json.loads(line)
    except (TypeError, ValueError) as exc:
        raise FrameError(f"unparseable frame: {exc}") from exc
    if not isinstance(payload, dict):
        raise FrameError("frame is not a JSON object")

    has_id = payload.get("id") is not None
    method = payload.get("method")
    if method is not None and not isinstance(method, str):
        raise FrameError("frame method is not a string")
    frame_id = payload.get("id")
    if has_id and not isinstance(frame_id, (int, str)) or isinstance(frame_id, bool):
        raise FrameError("frame id must be an integer or string")

    if has_id and method is None:
        error = payload.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"code": None, "message": str(error)}
        return Response(id=frame_id, result=payload.get("result"), error=error)
    if has_id:
        return Request(id=frame_id, method=method, params=payload.get("params"))
    if method is not None:
        return Notification(method=method, params=payload.get("params"))
    raise FrameError("frame has neither id nor method")
