"""JSON-RPC multiplexer over a single line-oriented channel.

One multiplexer serves one agent process. It correlates outbound requests
with their responses, serves inbound requests through a registered
dispatcher and forwards notifications, strictly in arrival order, to per-method
handlers. Every frame in either direction is handed to the traffic recorder.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from acpdesk.bridge.channel import Channel
from acpdesk.bridge.frames import (
    Frame,
    Notification,
    Request,
    Response,
    encode_frame,
    parse_frame,
)
from acpdesk.bridge.traffic import TrafficRecorder
from acpdesk.errors import (
    DisconnectedError,
    FrameError,
    InternalRpcError,
    MethodNotFoundError,
    RequestTimeoutError,
    RpcError,
    TransportError,
)
from acpdesk.log_utils import log_frames_enabled

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = 60.0
# Largest id every JSON peer can represent exactly.
MAX_REQUEST_ID = 2**53 - 1

RequestHandler = Callable[[str, Any], Awaitable[Any]]
NotificationHandler = Callable[[Any], None]
DisconnectListener = Callable[[RpcError], None]


def request_timeout_from_env(default: float = DEFAULT_REQUEST_TIMEOUT_S) -> float:
    raw = os.getenv("ACPDESK_REQUEST_TIMEOUT_S")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass
class PendingCall:
    id: int
    method: str
    created_at: float
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = None


class RpcMultiplexer:
    """Request/response correlation plus inbound dispatch for one channel."""

    def __init__(
        self,
        channel: Channel,
        *,
        recorder: TrafficRecorder | None = None,
        request_timeout_s: float | None = None,
        source: str | None = None,
    ) -> None:
        self._channel = channel
        self._recorder = recorder
        self._timeout_s = request_timeout_s if request_timeout_s is not None else request_timeout_from_env()
        self._source = source
        self._pending: dict[int, PendingCall] = {}
        self._next_id = 0
        self._request_handler: RequestHandler | None = None
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._disconnect_listeners: list[DisconnectListener] = []
        self._inbound_tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._channel_closed = False
        channel.on_line(self.handle_line)
        channel.on_close(self._on_channel_closed)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_methods(self) -> list[str]:
        return [call.method for call in self._pending.values()]

    def on_inbound_request(self, handler: RequestHandler) -> None:
        self._request_handler = handler

    def on_inbound_notification(self, method: str, handler: NotificationHandler) -> None:
        self._notification_handlers[method] = handler

    def on_disconnect(self, listener: DisconnectListener) -> None:
        self._disconnect_listeners.append(listener)

    async def send_request(self, method: str, params: Any = None) -> Any:
        """Send a request and wait for its result.

        Raises the wire error mapped to an RpcError, RequestTimeoutError when
        no response arrives in time, or DisconnectedError/TransportError when
        the channel dies first.
        """
        if self._closed:
            raise DisconnectedError(f"Cannot send {method}: agent disconnected")
        loop = asyncio.get_running_loop()
        request_id = self._allocate_id()
        call = PendingCall(id=request_id, method=method, created_at=time.time(), future=loop.create_future())
        call.timer = loop.call_later(self._timeout_s, self._expire, request_id)
        self._pending[request_id] = call

        frame = Request(id=request_id, method=method, params=params)
        self._trace("out", frame, method)
        try:
            await self._channel.send(encode_frame(frame))
        except Exception as exc:  # noqa: BLE001 - any write failure kills the channel
            logger.error("request.send_failed method=%s id=%s error=%s", method, request_id, exc)
            self._teardown(TransportError(f"Failed to send {method}: {exc}"))

        try:
            return await call.future
        except asyncio.CancelledError:
            self._discard(request_id)
            raise

    async def send_notification(self, method: str, params: Any = None) -> None:
        if self._closed:
            raise DisconnectedError(f"Cannot send {method}: agent disconnected")
        frame = Notification(method=method, params=params)
        self._trace("out", frame, method)
        try:
            await self._channel.send(encode_frame(frame))
        except Exception as exc:  # noqa: BLE001
            logger.error("notification.send_failed method=%s error=%s", method, exc)
            error = TransportError(f"Failed to send {method}: {exc}")
            self._teardown(error)
            raise error from exc

    def handle_line(self, line: str) -> None:
        """Process one inbound line; never raises."""
        if not line.strip():
            return
        try:
            frame = parse_frame(line)
        except FrameError as exc:
            logger.warning("frame.dropped reason=%s line=%.200s", exc, line)
            return
        if isinstance(frame, Response):
            self._handle_response(frame)
        elif isinstance(frame, Request):
            self._handle_request(frame)
        else:
            self._handle_notification(frame)

    async def close(self) -> None:
        """Reject everything pending and close the channel. Safe to call twice."""
        self._teardown(DisconnectedError("Connection closed"))
        if self._channel_closed:
            return
        self._channel_closed = True
        try:
            await self._channel.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("channel.close_failed error=%s", exc)

    def _allocate_id(self) -> int:
        while True:
            candidate = self._next_id
            self._next_id = 0 if candidate >= MAX_REQUEST_ID else candidate + 1
            if candidate not in self._pending:
                return candidate

    def _handle_response(self, frame: Response) -> None:
        call = self._pending.get(frame.id) if isinstance(frame.id, int) else None
        self._trace("in", frame, call.method if call else "unknown")
        if call is None:
            logger.debug("response.unmatched id=%s", frame.id)
            return
        if frame.error is not None:
            error = RpcError.from_wire(frame.error)
            logger.info("request.failed method=%s id=%s code=%s message=%s", call.method, frame.id, error.code, error.message)
            self._settle(frame.id, error=error)
        else:
            self._settle(frame.id, result=frame.result)

    def _handle_request(self, frame: Request) -> None:
        self._trace("in", frame, frame.method)
        task = asyncio.ensure_future(self._serve_request(frame))
        self._inbound_tasks.add(task)
        task.add_done_callback(self._inbound_tasks.discard)

    async def _serve_request(self, frame: Request) -> None:
        try:
            if self._request_handler is None:
                raise MethodNotFoundError.for_method(frame.method)
            result = await self._request_handler(frame.method, frame.params)
            response = Response(id=frame.id, result={} if result is None else result)
        except RpcError as exc:
            response = Response(id=frame.id, error=exc.to_error_obj())
        except Exception as exc:  # noqa: BLE001 - translated into an error response
            logger.exception("request.handler_failed method=%s id=%s", frame.method, frame.id)
            response = Response(id=frame.id, error=InternalRpcError(str(exc) or type(exc).__name__).to_error_obj())
        await self._send_response(frame.method, response)

    async def _send_response(self, method: str, response: Response) -> None:
        if self._closed:
            logger.info("response.dropped method=%s id=%s reason=closed", method, response.id)
            return
        self._trace("out", response, method)
        try:
            await self._channel.send(encode_frame(response))
        except Exception as exc:  # noqa: BLE001
            logger.error("response.send_failed method=%s id=%s error=%s", method, response.id, exc)
            self._teardown(TransportError(f"Failed to answer {method}: {exc}"))

    def _handle_notification(self, frame: Notification) -> None:
        self._trace("in", frame, frame.method)
        handler = self._notification_handlers.get(frame.method)
        if handler is None:
            logger.debug("notification.unhandled method=%s", frame.method)
            return
        try:
            handler(frame.params)
        except Exception:  # noqa: BLE001
            logger.exception("notification.handler_failed method=%s", frame.method)

    def _settle(self, request_id: int, *, result: Any = None, error: BaseException | None = None) -> bool:
        call = self._pending.pop(request_id, None)
        if call is None:
            return False
        if call.timer is not None:
            call.timer.cancel()
        if call.future.done():
            return False
        if error is not None:
            call.future.set_exception(error)
        else:
            call.future.set_result(result)
        return True

    def _discard(self, request_id: int) -> None:
        call = self._pending.pop(request_id, None)
        if call is not None and call.timer is not None:
            call.timer.cancel()

    def _expire(self, request_id: int) -> None:
        call = self._pending.get(request_id)
        if call is None:
            return
        logger.warning("request.timeout method=%s id=%s timeout_s=%s", call.method, request_id, self._timeout_s)
        self._settle(request_id, error=RequestTimeoutError(call.method, self._timeout_s))

    def _on_channel_closed(self, exc: BaseException | None) -> None:
        if exc is None:
            self._teardown(DisconnectedError("Agent process exited"))
        else:
            self._teardown(TransportError(f"Agent channel failed: {exc}"))

    def _teardown(self, error: RpcError) -> None:
        if self._closed:
            return
        self._closed = True
        for request_id in list(self._pending):
            self._settle(request_id, error=error)
        for task in list(self._inbound_tasks):
            task.cancel()
        logger.info("channel.teardown reason=%s", error.message)
        for listener in list(self._disconnect_listeners):
            try:
                listener(error)
            except Exception:  # noqa: BLE001
                logger.exception("disconnect.listener_failed")

    def _trace(self, direction: str, frame: Frame, method: str) -> None:
        payload = frame.to_payload()
        if log_frames_enabled():
            logger.debug("frame.%s %s", direction, payload)
        if self._recorder is None:
            return
        self._recorder.record(
            direction=direction,  # type: ignore[arg-type]
            type=frame.kind,  # type: ignore[arg-type]
            method=method,
            payload=payload,
            request_id=getattr(frame, "id", None),
            error=isinstance(frame, Response) and frame.is_error,
            source=self._source,
        )
