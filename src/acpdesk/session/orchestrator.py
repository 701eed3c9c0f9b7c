"""Drive one agent connection from spawn to teardown.

The lifecycle is ``idle -> connecting -> handshaking -> establishing_session
-> active -> closing -> closed``. Authentication is lazy: it only happens when
session/new or session/load fails with an auth-required error and the agent
advertised at least one auth method, and establishment is retried once
afterwards. Any failure before ``active`` ends in ``error`` with the channel
released and no session or transcript left behind.

Cancelling a connection attempt only raises a flag. Each step checks it after
its await returns, so in-flight requests are never aborted, but nothing new is
sent once the flag is up.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from acp import PROTOCOL_VERSION, text_block
from acp.schema import ClientCapabilities, FileSystemCapability, Implementation

from acpdesk import __version__
from acpdesk.bridge.channel import Channel, ChannelLauncher, detect_startup_phase
from acpdesk.bridge.multiplexer import RpcMultiplexer
from acpdesk.bridge.traffic import TrafficRecorder
from acpdesk.errors import (
    ConnectionCancelled,
    InternalRpcError,
    RpcError,
    SessionStateError,
    is_auth_required,
)
from acpdesk.log_utils import log_context
from acpdesk.session.arbitrator import InteractionArbitrator
from acpdesk.session.assembler import ConversationAssembler
from acpdesk.session.auth import auth_methods_for_error, extract_auth_methods
from acpdesk.session.files import FileAccess, LocalFileAccess
from acpdesk.session.handlers import ClientRequestHandler
from acpdesk.session.models import (
    AuthMethodInfo,
    Message,
    Session,
    ToolCallRecord,
    default_title,
    derive_title,
)
from acpdesk.store import SessionPersistence
from acpdesk.telemetry import Telemetry

logger = logging.getLogger(__name__)

CLIENT_NAME = "acpdesk"
CLIENT_TITLE = "ACP Desk"


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    AUTHENTICATING = "authenticating"
    ESTABLISHING_SESSION = "establishing_session"
    CANCELLING = "cancelling"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


_OPENING_STATES = frozenset(
    {
        SessionState.CONNECTING,
        SessionState.HANDSHAKING,
        SessionState.AUTHENTICATING,
        SessionState.ESTABLISHING_SESSION,
        SessionState.CANCELLING,
    }
)
_RESTARTABLE_STATES = frozenset({SessionState.IDLE, SessionState.CLOSED, SessionState.ERROR})

StateListener = Callable[[SessionState], None]


@dataclass
class AgentCapabilities:
    """What the agent declared in its initialize response."""

    protocol_version: int | None = None
    supports_resume: bool = False
    auth_methods: list[AuthMethodInfo] = field(default_factory=list)
    agent_name: str | None = None
    agent_version: str | None = None

    @classmethod
    def from_initialize(cls, result: Any) -> "AgentCapabilities":
        if not isinstance(result, dict):
            return cls()
        caps = result.get("agentCapabilities") or {}
        info = result.get("agentInfo") or {}
        version = result.get("protocolVersion")
        return cls(
            protocol_version=version if isinstance(version, int) else None,
            supports_resume=bool(caps.get("loadSession", False)) if isinstance(caps, dict) else False,
            auth_methods=extract_auth_methods(result),
            agent_name=info.get("name") if isinstance(info, dict) else None,
            agent_version=info.get("version") if isinstance(info, dict) else None,
        )


def _dump(model: Any) -> Any:
    if hasattr(model, "model_dump"):
        return model.model_dump(by_alias=True, exclude_none=True, mode="json")
    return model


class SessionOrchestrator:
    """Owns the single session, its transcript and the agent connection."""

    def __init__(
        self,
        launcher: ChannelLauncher,
        *,
        arbitrator: InteractionArbitrator | None = None,
        file_access: FileAccess | None = None,
        persistence: SessionPersistence | None = None,
        recorder: TrafficRecorder | None = None,
        telemetry: Telemetry | None = None,
        request_timeout_s: float | None = None,
        mcp_servers: list[Any] | None = None,
    ) -> None:
        self._launcher = launcher
        self.arbitrator = arbitrator or InteractionArbitrator()
        self.assembler = ConversationAssembler()
        self._file_access = file_access
        self._persistence = persistence
        self._recorder = recorder
        self._telemetry = telemetry or Telemetry()
        self._request_timeout_s = request_timeout_s
        self._mcp_servers = list(mcp_servers or [])
        self._state = SessionState.IDLE
        self._state_listeners: list[StateListener] = []
        self._mux: RpcMultiplexer | None = None
        self._session: Session | None = None
        self._capabilities: AgentCapabilities | None = None
        self._cancel_requested = False
        self._user_turns = 0
        self._disconnect_error: RpcError | None = None
        self._connected_at = 0.0
        self._background: set[asyncio.Task[None]] = set()
        self.last_error: str | None = None
        self.last_stop_reason: str | None = None
        self.startup_phase = "starting"
        self.startup_logs: list[str] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return replace(self._session) if self._session is not None else None

    @property
    def capabilities(self) -> AgentCapabilities | None:
        return self._capabilities

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def current_mode_id(self) -> str:
        return self.assembler.current_mode_id

    @property
    def current_model_id(self) -> str:
        return self.assembler.current_model_id

    def transcript(self) -> list[Message]:
        return self.assembler.messages()

    def tool_calls(self) -> list[ToolCallRecord]:
        return self.assembler.tool_calls()

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    async def create_session(self, agent_name: str, cwd: str) -> Session:
        """Spawn the agent and start a new conversation."""
        return await self._open(agent_name, cwd, resume=None)

    async def resume_session(self, saved: Session) -> Session:
        """Spawn the agent and load a previously saved conversation.

        The transcript is cleared first and rebuilt from the updates the agent
        replays while answering session/load.
        """
        return await self._open(saved.agent_name, saved.cwd, resume=saved)

    def request_cancel(self) -> bool:
        """Flag the running connection attempt for cancellation."""
        if self._state not in _OPENING_STATES:
            return False
        self._cancel_requested = True
        self._transition(SessionState.CANCELLING)
        self.arbitrator.cancel_auth_selection()
        return True

    async def send_prompt(self, text: str) -> str | None:
        """Submit a user turn and wait for its stop reason."""
        session, mux = self._require_active()
        self.assembler.add_user_message(text)
        with log_context(session=session.session_id):
            result = await mux.send_request(
                "session/prompt",
                {"sessionId": session.session_id, "prompt": [_dump(text_block(text))]},
            )
        stop_reason = result.get("stopReason") if isinstance(result, dict) else None
        first_exchange = self._user_turns == 0
        self._user_turns += 1
        self.last_stop_reason = stop_reason
        logger.info("prompt.completed session=%s stop_reason=%s", session.session_id, stop_reason)
        self._telemetry.track_event("PromptSent", messageLength=len(text), stopReason=stop_reason or "unknown")
        if first_exchange:
            session.title = derive_title(text)
        session.last_updated = time.time()
        self._persist(session)
        return stop_reason

    async def cancel(self) -> None:
        """Ask the agent to stop the current turn; the prompt call still completes normally."""
        if self._state is not SessionState.ACTIVE or self._session is None or self._mux is None:
            return
        self.arbitrator.cancel_permission()
        await self._mux.send_notification("session/cancel", {"sessionId": self._session.session_id})

    async def set_mode(self, mode_id: str) -> None:
        session, mux = self._require_active()
        previous = self.assembler.current_mode_id
        self.assembler.current_mode_id = mode_id
        try:
            await mux.send_request("session/set_mode", {"sessionId": session.session_id, "modeId": mode_id})
        except RpcError:
            if self.assembler.current_mode_id == mode_id:
                self.assembler.current_mode_id = previous
            raise

    async def set_model(self, model_id: str) -> None:
        session, mux = self._require_active()
        previous = self.assembler.current_model_id
        self.assembler.current_model_id = model_id
        try:
            await mux.send_request("session/set_model", {"sessionId": session.session_id, "modelId": model_id})
        except RpcError:
            if self.assembler.current_model_id == model_id:
                self.assembler.current_model_id = previous
            raise

    async def disconnect(self) -> None:
        """Close the agent connection. Does nothing when already closed."""
        if self._state in _OPENING_STATES:
            self.request_cancel()
            return
        if self._state in _RESTARTABLE_STATES:
            return
        session = self._session
        message_count = len(self.assembler)
        self._transition(SessionState.CLOSING)
        await self._release_channel()
        if session is not None:
            self._telemetry.track_event(
                "SessionDisconnected",
                agentName=session.agent_name,
                sessionDurationSeconds=round(time.time() - self._connected_at),
                messageCount=message_count,
            )
        self._clear_session_state()
        self._transition(SessionState.CLOSED)

    async def _open(self, agent_name: str, cwd: str, resume: Session | None) -> Session:
        if self._state not in _RESTARTABLE_STATES:
            raise SessionStateError(f"Cannot connect while {self._state.value}")
        self._cancel_requested = False
        self._clear_session_state()
        self._disconnect_error = None
        self.last_error = None
        self.startup_phase = "starting"
        self.startup_logs = []
        event = "SessionResumed" if resume is not None else "SessionCreated"
        with log_context(agent=agent_name):
            self._transition(SessionState.CONNECTING)
            try:
                session = await self._connect_and_establish(agent_name, cwd, resume)
            except ConnectionCancelled:
                logger.info("connect.cancelled agent=%s", agent_name)
                self._clear_session_state()
                await self._release(SessionState.CLOSED)
                raise
            except asyncio.CancelledError:
                self._clear_session_state()
                await self._release(SessionState.CLOSED)
                raise
            except Exception as exc:
                self._clear_session_state()
                if self._cancel_requested:
                    await self._release(SessionState.CLOSED)
                    raise ConnectionCancelled() from exc
                self.last_error = getattr(exc, "message", None) or str(exc) or type(exc).__name__
                logger.error("connect.failed agent=%s error=%s", agent_name, self.last_error)
                await self._release(SessionState.ERROR)
                self._telemetry.track_event(event, agentName=agent_name, success="false")
                self._telemetry.track_error(exc)
                raise
        self._telemetry.track_event(event, agentName=agent_name, success="true")
        return replace(session)

    async def _connect_and_establish(self, agent_name: str, cwd: str, resume: Session | None) -> Session:
        channel = await self._launcher(agent_name, cwd=cwd, on_stderr=self._on_agent_stderr)
        mux = self._bind(channel, agent_name, cwd)
        self._checkpoint()

        self.startup_phase = "initializing"
        self._transition(SessionState.HANDSHAKING)
        init_result = await mux.send_request("initialize", self._initialize_params())
        self._checkpoint()
        capabilities = AgentCapabilities.from_initialize(init_result)
        if capabilities.protocol_version is not None and capabilities.protocol_version != PROTOCOL_VERSION:
            logger.warning(
                "initialize.protocol_mismatch requested=%s agent=%s",
                PROTOCOL_VERSION,
                capabilities.protocol_version,
            )
        self._capabilities = capabilities
        logger.info(
            "initialize.completed agent=%s load_session=%s auth_methods=%s",
            capabilities.agent_name or agent_name,
            capabilities.supports_resume,
            [m.id for m in capabilities.auth_methods],
        )
        if resume is not None and not capabilities.supports_resume:
            raise SessionStateError(f"Agent '{agent_name}' does not support resuming sessions")

        self.startup_phase = "connecting"
        self._transition(SessionState.ESTABLISHING_SESSION)
        self._checkpoint()
        try:
            result = await self._establish(mux, cwd, resume)
        except RpcError as exc:
            if not is_auth_required(exc) or not capabilities.auth_methods:
                raise
            self._checkpoint()
            methods = auth_methods_for_error(capabilities.auth_methods, exc.data)
            logger.info("session.auth_required agent=%s methods=%s", agent_name, [m.id for m in methods])
            self._transition(SessionState.AUTHENTICATING)
            method_id = await self.arbitrator.request_auth_method(agent_name, methods)
            if method_id is None:
                if self._disconnect_error is not None:
                    raise self._disconnect_error from exc
                raise ConnectionCancelled("Authentication cancelled by user") from exc
            self._checkpoint()
            await mux.send_request("authenticate", {"methodId": method_id})
            logger.info("authenticate.completed agent=%s method=%s", agent_name, method_id)
            self._checkpoint()
            self._transition(SessionState.ESTABLISHING_SESSION)
            result = await self._establish(mux, cwd, resume)
        self._checkpoint()

        if resume is not None:
            session = replace(resume)
            session.last_updated = time.time()
        else:
            session_id = result.get("sessionId")
            if not isinstance(session_id, str) or not session_id:
                raise InternalRpcError("Agent did not return a sessionId")
            session = Session(
                session_id=session_id,
                agent_name=agent_name,
                cwd=cwd,
                supports_resume=capabilities.supports_resume,
                title=default_title(),
            )
        self.assembler.session_id = session.session_id
        self.assembler.capture_session_settings(result)
        self._session = session
        self._user_turns = sum(1 for message in self.assembler.messages() if message.role == "user")
        self._connected_at = time.time()
        self._persist(session)
        self._transition(SessionState.ACTIVE)
        logger.info("session.active session=%s agent=%s resumed=%s", session.session_id, agent_name, resume is not None)
        return session

    async def _establish(self, mux: RpcMultiplexer, cwd: str, resume: Session | None) -> dict[str, Any]:
        self.assembler.reset()
        self.assembler.reset_settings()
        params: dict[str, Any] = {"cwd": cwd, "mcpServers": [_dump(server) for server in self._mcp_servers]}
        if resume is not None:
            self.assembler.session_id = resume.session_id
            params["sessionId"] = resume.session_id
            result = await mux.send_request("session/load", params)
        else:
            self.assembler.session_id = None
            result = await mux.send_request("session/new", params)
        return result if isinstance(result, dict) else {}

    def _initialize_params(self) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "clientCapabilities": _dump(
                ClientCapabilities(fs=FileSystemCapability(read_text_file=True, write_text_file=True))
            ),
            "clientInfo": _dump(Implementation(name=CLIENT_NAME, title=CLIENT_TITLE, version=__version__)),
        }

    def _bind(self, channel: Channel, agent_name: str, cwd: str) -> RpcMultiplexer:
        mux = RpcMultiplexer(
            channel,
            recorder=self._recorder,
            request_timeout_s=self._request_timeout_s,
            source=agent_name,
        )
        mux.on_inbound_notification("session/update", self.assembler.apply_notification)
        mux.on_inbound_request(ClientRequestHandler(self._file_access or LocalFileAccess(cwd), self.arbitrator))
        mux.on_disconnect(lambda error: self._on_disconnect(mux, error))
        self._mux = mux
        return mux

    def _checkpoint(self) -> None:
        if self._cancel_requested:
            raise ConnectionCancelled()

    def _require_active(self) -> tuple[Session, RpcMultiplexer]:
        if self._state is not SessionState.ACTIVE or self._session is None or self._mux is None:
            raise SessionStateError()
        return self._session, self._mux

    def _transition(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.info("session.state from=%s to=%s", self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:  # noqa: BLE001
                logger.exception("session.state_listener_failed")

    def _on_disconnect(self, mux: RpcMultiplexer, error: RpcError) -> None:
        if mux is not self._mux:
            return
        if self._state is SessionState.ACTIVE:
            logger.error("session.disconnected error=%s", error.message)
            self.last_error = error.message
            self.arbitrator.cancel_all()
            self._mux = None
            self._transition(SessionState.ERROR)
            task = asyncio.ensure_future(mux.close())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        elif self._state in _OPENING_STATES:
            logger.error("connect.disconnected state=%s error=%s", self._state.value, error.message)
            self.last_error = error.message
            self._disconnect_error = error
            self.arbitrator.cancel_auth_selection()

    def _on_agent_stderr(self, line: str) -> None:
        if self._state not in _OPENING_STATES:
            return
        self.startup_logs.append(line)
        phase = detect_startup_phase(line)
        if phase:
            self.startup_phase = phase

    async def _release_channel(self) -> None:
        self.arbitrator.cancel_all()
        mux, self._mux = self._mux, None
        if mux is not None:
            await mux.close()

    async def _release(self, final_state: SessionState) -> None:
        await self._release_channel()
        self._transition(final_state)

    def _clear_session_state(self) -> None:
        self._session = None
        self._capabilities = None
        self._user_turns = 0
        self.assembler.session_id = None
        self.assembler.reset()
        self.assembler.reset_settings()

    def _persist(self, session: Session) -> None:
        if self._persistence is None:
            return
        try:
            sessions = self._persistence.list()
            for idx, saved in enumerate(sessions):
                if saved.id == session.id:
                    sessions[idx] = replace(session)
                    break
            else:
                sessions.append(replace(session))
            self._persistence.save(sessions)
        except Exception as exc:  # noqa: BLE001
            logger.error("sessions.save_failed session=%s error=%s", session.session_id, exc)
