from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

Handler = Callable[[dict[str, Any]], list[dict[str, Any]] | None]


def ok(frame: dict[str, Any], result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": frame["id"], "result": result}


def err(frame: dict[str, Any], code: int, message: str, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": frame["id"], "error": error}


def update(session_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "method": "session/update", "params": {"sessionId": session_id, "update": payload}}


def text_chunk(session_id: str, text: str, kind: str = "agent_message_chunk") -> dict[str, Any]:
    return update(session_id, {"sessionUpdate": kind, "content": {"type": "text", "text": text}})


class FakeChannel:
    """In-memory channel; replies produced by ``responder`` are fed back on the next loop turn."""

    def __init__(self, responder: Callable[[dict[str, Any]], list[Any] | None] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.responder = responder
        self.fail_sends = False
        self.closed = False
        self._line_callbacks: list[Callable[[str], None]] = []
        self._close_callbacks: list[Callable[[BaseException | None], None]] = []

    async def send(self, line: str) -> None:
        if self.fail_sends:
            raise ConnectionResetError("broken pipe")
        frame = json.loads(line)
        self.sent.append(frame)
        if self.responder is None:
            return
        loop = asyncio.get_running_loop()
        for reply in self.responder(frame) or []:
            loop.call_soon(self.feed, reply)

    def feed(self, payload: Any) -> None:
        line = payload if isinstance(payload, str) else json.dumps(payload)
        for callback in list(self._line_callbacks):
            callback(line)

    def on_line(self, callback: Callable[[str], None]) -> None:
        self._line_callbacks.append(callback)

    def on_close(self, callback: Callable[[BaseException | None], None]) -> None:
        self._close_callbacks.append(callback)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for callback in list(self._close_callbacks):
            callback(None)

    def drop(self, error: BaseException | None = None) -> None:
        """Simulate the agent process going away."""
        for callback in list(self._close_callbacks):
            callback(error)

    def methods(self) -> list[str]:
        return [frame["method"] for frame in self.sent if "method" in frame]

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if frame.get("method") == method and "id" in frame]


class ScriptedAgent:
    """Responder that answers requests by method; unknown methods get -32601.

    A handler returns the frames to emit (notifications first, then the
    response) or None to leave the request unanswered.
    """

    def __init__(self, handlers: dict[str, Handler] | None = None) -> None:
        self.handlers: dict[str, Handler] = dict(handlers or {})
        self.calls: dict[str, int] = {}

    def __call__(self, frame: dict[str, Any]) -> list[dict[str, Any]] | None:
        method = frame.get("method")
        if method is None or "id" not in frame:
            return None
        self.calls[method] = self.calls.get(method, 0) + 1
        handler = self.handlers.get(method)
        if handler is None:
            return [err(frame, -32601, f"Method not found: {method}")]
        return handler(frame)


def basic_agent(session_id: str = "sess-1", *, load_session: bool = False, **overrides: Handler) -> ScriptedAgent:
    handlers: dict[str, Handler] = {
        "initialize": lambda f: [
            ok(f, {"protocolVersion": 1, "agentCapabilities": {"loadSession": load_session}, "authMethods": []})
        ],
        "session/new": lambda f: [ok(f, {"sessionId": session_id})],
        "session/prompt": lambda f: [ok(f, {"stopReason": "end_turn"})],
    }
    handlers.update(overrides)
    return ScriptedAgent(handlers)


def launcher_for(channel: FakeChannel) -> Callable[..., Any]:
    launches: list[dict[str, Any]] = []

    async def _launch(agent_name: str, *, cwd: str | None = None, on_stderr: Any = None) -> FakeChannel:
        launches.append({"agent": agent_name, "cwd": cwd, "on_stderr": on_stderr})
        return channel

    _launch.launches = launches  # type: ignore[attr-defined]
    return _launch
