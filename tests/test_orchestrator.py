from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from acpdesk.errors import (
    AuthRequiredError,
    ConnectionCancelled,
    DisconnectedError,
    InternalRpcError,
    InvalidParamsError,
    RequestTimeoutError,
    SessionStateError,
)
from acpdesk.session.models import Session
from acpdesk.session.orchestrator import SessionOrchestrator, SessionState
from acpdesk.store import JsonSessionStore
from acpdesk.telemetry import Telemetry
from tests.utils import FakeChannel, basic_agent, err, launcher_for, ok, text_chunk, update

AUTH_INIT = {
    "protocolVersion": 1,
    "agentCapabilities": {"loadSession": True},
    "authMethods": [{"id": "login", "name": "Log in"}, {"id": "token", "name": "API token"}],
}


def _orchestrator(channel: FakeChannel, **kwargs) -> SessionOrchestrator:
    return SessionOrchestrator(launcher_for(channel), **kwargs)


def _events(telemetry_log: list[tuple[str, dict]]) -> list[str]:
    return [name for name, _ in telemetry_log]


@pytest.mark.asyncio
async def test_create_session_and_prompt_streams_reply() -> None:
    agent = basic_agent(
        "sess-1",
        **{
            "session/prompt": lambda f: [
                text_chunk("sess-1", "Hi"),
                text_chunk("sess-1", " there"),
                ok(f, {"stopReason": "end_turn"}),
            ]
        },
    )
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)
    states: list[SessionState] = []
    orchestrator.on_state_change(states.append)

    session = await orchestrator.create_session("Test Agent", "/work")

    assert session.session_id == "sess-1"
    assert session.agent_name == "Test Agent"
    assert session.title.startswith("Session ")
    assert orchestrator.state is SessionState.ACTIVE
    assert states == [
        SessionState.CONNECTING,
        SessionState.HANDSHAKING,
        SessionState.ESTABLISHING_SESSION,
        SessionState.ACTIVE,
    ]

    stop_reason = await orchestrator.send_prompt("Hello")

    assert stop_reason == "end_turn"
    assert [(m.role, m.content) for m in orchestrator.transcript()] == [("user", "Hello"), ("assistant", "Hi there")]
    prompt = channel.requests("session/prompt")[0]["params"]
    assert prompt == {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "Hello"}]}


@pytest.mark.asyncio
async def test_initialize_params_declare_file_system_support() -> None:
    channel = FakeChannel(basic_agent())
    orchestrator = _orchestrator(channel)

    await orchestrator.create_session("Test Agent", "/work")

    params = channel.requests("initialize")[0]["params"]
    assert params["protocolVersion"] == 1
    assert params["clientCapabilities"]["fs"] == {"readTextFile": True, "writeTextFile": True}
    assert params["clientInfo"]["name"] == "acpdesk"
    assert channel.requests("session/new")[0]["params"] == {"cwd": "/work", "mcpServers": []}
    assert "authenticate" not in channel.methods()


@pytest.mark.asyncio
async def test_auth_required_prompts_for_method_and_retries_once() -> None:
    attempts: list[int] = []

    def new_session(frame):
        attempts.append(1)
        if len(attempts) == 1:
            return [err(frame, -32000, "Authentication required")]
        return [ok(frame, {"sessionId": "sess-auth"})]

    agent = basic_agent(
        initialize=lambda f: [ok(f, AUTH_INIT)],
        authenticate=lambda f: [ok(f, {})],
        **{"session/new": new_session},
    )
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)
    offered: list[list[str]] = []

    def choose(pending) -> None:
        offered.append([m.id for m in pending.methods])
        asyncio.get_running_loop().call_soon(orchestrator.arbitrator.select_auth_method, "token")

    orchestrator.arbitrator.on_auth_choice_needed(choose)

    session = await orchestrator.create_session("Test Agent", "/work")

    assert session.session_id == "sess-auth"
    assert offered == [["login", "token"]]
    assert channel.requests("authenticate")[0]["params"] == {"methodId": "token"}
    assert channel.methods() == ["initialize", "session/new", "authenticate", "session/new"]


@pytest.mark.asyncio
async def test_auth_error_data_narrows_offered_methods() -> None:
    calls: list[int] = []

    def new_session(frame):
        calls.append(1)
        if len(calls) == 1:
            return [err(frame, -32603, "authentication required", {"authMethods": [{"id": "token", "name": "API"}]})]
        return [ok(frame, {"sessionId": "s"})]

    agent = basic_agent(
        initialize=lambda f: [ok(f, AUTH_INIT)],
        authenticate=lambda f: [ok(f, {})],
        **{"session/new": new_session},
    )
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)
    offered: list[list[str]] = []

    def choose(pending) -> None:
        offered.append([m.id for m in pending.methods])
        asyncio.get_running_loop().call_soon(orchestrator.arbitrator.select_auth_method, "token")

    orchestrator.arbitrator.on_auth_choice_needed(choose)

    await orchestrator.create_session("Test Agent", "/work")

    assert offered == [["token"]]


@pytest.mark.asyncio
async def test_cancelling_auth_choice_closes_without_error() -> None:
    agent = basic_agent(
        initialize=lambda f: [ok(f, AUTH_INIT)],
        **{"session/new": lambda f: [err(f, -32000, "Authentication required")]},
    )
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)
    orchestrator.arbitrator.on_auth_choice_needed(
        lambda _pending: asyncio.get_running_loop().call_soon(orchestrator.arbitrator.cancel_auth_selection)
    )

    with pytest.raises(ConnectionCancelled):
        await orchestrator.create_session("Test Agent", "/work")

    assert orchestrator.state is SessionState.CLOSED
    assert orchestrator.session is None
    assert orchestrator.last_error is None
    assert channel.closed
    assert "authenticate" not in channel.methods()


@pytest.mark.asyncio
async def test_auth_required_without_advertised_methods_is_an_error() -> None:
    agent = basic_agent(**{"session/new": lambda f: [err(f, -32000, "Authentication required")]})
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)

    with pytest.raises(AuthRequiredError):
        await orchestrator.create_session("Test Agent", "/work")

    assert orchestrator.state is SessionState.ERROR
    assert orchestrator.last_error == "Authentication required"
    assert channel.closed


@pytest.mark.asyncio
async def test_cancel_during_handshake_never_sends_session_new() -> None:
    orchestrator: SessionOrchestrator

    def initialize(frame):
        orchestrator.request_cancel()
        return [ok(frame, {"protocolVersion": 1, "agentCapabilities": {}})]

    channel = FakeChannel(basic_agent(initialize=initialize))
    orchestrator = _orchestrator(channel)

    with pytest.raises(ConnectionCancelled):
        await orchestrator.create_session("Test Agent", "/work")

    assert channel.methods() == ["initialize"]
    assert orchestrator.state is SessionState.CLOSED
    assert channel.closed


@pytest.mark.asyncio
async def test_cancel_between_handshake_and_establishment() -> None:
    channel = FakeChannel(basic_agent())
    orchestrator = _orchestrator(channel)
    states: list[SessionState] = []

    def on_state(state: SessionState) -> None:
        states.append(state)
        if state is SessionState.ESTABLISHING_SESSION:
            orchestrator.request_cancel()

    orchestrator.on_state_change(on_state)

    with pytest.raises(ConnectionCancelled):
        await orchestrator.create_session("Test Agent", "/work")

    assert "session/new" not in channel.methods()
    assert states[-2:] == [SessionState.CANCELLING, SessionState.CLOSED]
    assert orchestrator.transcript() == []


@pytest.mark.asyncio
async def test_cancel_before_channel_is_ready() -> None:
    channel = FakeChannel(basic_agent())
    orchestrator: SessionOrchestrator

    async def slow_launch(agent_name, *, cwd=None, on_stderr=None):
        orchestrator.request_cancel()
        return channel

    orchestrator = SessionOrchestrator(slow_launch)

    with pytest.raises(ConnectionCancelled):
        await orchestrator.create_session("Test Agent", "/work")

    assert channel.sent == []
    assert channel.closed
    assert orchestrator.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_session_new_failure_releases_everything() -> None:
    agent = basic_agent(
        **{
            "session/new": lambda f: [
                text_chunk("sess-1", "stale"),
                err(f, -32603, "boom"),
            ]
        }
    )
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)

    with pytest.raises(InternalRpcError):
        await orchestrator.create_session("Test Agent", "/work")

    assert orchestrator.state is SessionState.ERROR
    assert orchestrator.session is None
    assert orchestrator.transcript() == []
    assert orchestrator.last_error == "boom"
    assert channel.closed


@pytest.mark.asyncio
async def test_missing_session_id_is_an_error() -> None:
    channel = FakeChannel(basic_agent(**{"session/new": lambda f: [ok(f, {})]}))
    orchestrator = _orchestrator(channel)

    with pytest.raises(InternalRpcError):
        await orchestrator.create_session("Test Agent", "/work")
    assert orchestrator.state is SessionState.ERROR


@pytest.mark.asyncio
async def test_handshake_timeout_surfaces_as_error() -> None:
    channel = FakeChannel(basic_agent(initialize=lambda f: None))
    orchestrator = _orchestrator(channel, request_timeout_s=0.05)

    with pytest.raises(RequestTimeoutError):
        await orchestrator.create_session("Test Agent", "/work")

    assert orchestrator.state is SessionState.ERROR
    assert channel.closed


@pytest.mark.asyncio
async def test_launch_failure_is_an_error() -> None:
    async def broken_launch(agent_name, *, cwd=None, on_stderr=None):
        raise FileNotFoundError("npx")

    orchestrator = SessionOrchestrator(broken_launch)

    with pytest.raises(FileNotFoundError):
        await orchestrator.create_session("Test Agent", "/work")
    assert orchestrator.state is SessionState.ERROR


@pytest.mark.asyncio
async def test_connecting_twice_is_rejected() -> None:
    channel = FakeChannel(basic_agent())
    orchestrator = _orchestrator(channel)
    await orchestrator.create_session("Test Agent", "/work")

    with pytest.raises(SessionStateError):
        await orchestrator.create_session("Test Agent", "/work")


@pytest.mark.asyncio
async def test_prompt_requires_active_session() -> None:
    orchestrator = SessionOrchestrator(launcher_for(FakeChannel()))

    with pytest.raises(SessionStateError):
        await orchestrator.send_prompt("hi")


@pytest.mark.asyncio
async def test_resume_replays_history_into_fresh_transcript(tmp_path: Path) -> None:
    saved = Session(session_id="old-1", agent_name="Test Agent", cwd="/work", supports_resume=True, title="Earlier")

    def load(frame):
        return [
            text_chunk("old-1", "first question", kind="user_message_chunk"),
            text_chunk("old-1", "first answer"),
            ok(frame, {"modes": {"currentModeId": "ask", "availableModes": [{"id": "ask", "name": "Ask"}]}}),
        ]

    channel = FakeChannel(basic_agent(load_session=True, **{"session/load": load}))
    store = JsonSessionStore(tmp_path / "sessions.json")
    store.save([saved])
    orchestrator = _orchestrator(channel, persistence=store)
    orchestrator.assembler.add_user_message("leftover")

    session = await orchestrator.resume_session(saved)

    assert session.session_id == "old-1"
    assert channel.requests("session/load")[0]["params"] == {"sessionId": "old-1", "cwd": "/work", "mcpServers": []}
    assert [(m.role, m.content) for m in orchestrator.transcript()] == [
        ("user", "first question"),
        ("assistant", "first answer"),
    ]
    assert orchestrator.current_mode_id == "ask"

    await orchestrator.send_prompt("follow up")
    assert orchestrator.session.title == "Earlier"
    assert [s.session_id for s in store.list()] == ["old-1"]


@pytest.mark.asyncio
async def test_resume_requires_load_session_capability() -> None:
    saved = Session(session_id="old-1", agent_name="Test Agent", cwd="/work", supports_resume=True)
    channel = FakeChannel(basic_agent(load_session=False))
    orchestrator = _orchestrator(channel)

    with pytest.raises(SessionStateError):
        await orchestrator.resume_session(saved)
    assert "session/load" not in channel.methods()


@pytest.mark.asyncio
async def test_first_prompt_sets_title_and_persists(tmp_path: Path) -> None:
    channel = FakeChannel(basic_agent(load_session=True))
    store = JsonSessionStore(tmp_path / "sessions.json")
    orchestrator = _orchestrator(channel, persistence=store)
    await orchestrator.create_session("Test Agent", "/work")

    long_prompt = "x" * 80
    await orchestrator.send_prompt(long_prompt)
    await orchestrator.send_prompt("second prompt")

    saved = store.list()
    assert len(saved) == 1
    assert saved[0].title == "x" * 50 + "..."
    assert saved[0].supports_resume is True
    assert orchestrator.last_stop_reason == "end_turn"


@pytest.mark.asyncio
async def test_cancel_sends_notification_and_releases_permission() -> None:
    channel = FakeChannel(basic_agent())
    orchestrator = _orchestrator(channel)
    await orchestrator.create_session("Test Agent", "/work")
    channel.feed(
        {
            "jsonrpc": "2.0",
            "id": "perm-1",
            "method": "session/request_permission",
            "params": {
                "sessionId": "sess-1",
                "toolCall": {"toolCallId": "t1", "title": "Run"},
                "options": [{"optionId": "allow", "name": "Allow", "kind": "allow_once"}],
            },
        }
    )
    await asyncio.sleep(0.01)
    assert orchestrator.arbitrator.pending_permission is not None

    await orchestrator.cancel()
    await asyncio.sleep(0.01)

    cancels = [frame for frame in channel.sent if frame.get("method") == "session/cancel"]
    assert cancels == [{"jsonrpc": "2.0", "method": "session/cancel", "params": {"sessionId": "sess-1"}}]
    answer = [frame for frame in channel.sent if frame.get("id") == "perm-1"]
    assert answer[0]["result"] == {"outcome": {"outcome": "cancelled"}}


@pytest.mark.asyncio
async def test_set_mode_reverts_on_failure() -> None:
    agent = basic_agent(
        **{
            "session/new": lambda f: [
                ok(f, {"sessionId": "s", "modes": {"currentModeId": "ask", "availableModes": [{"id": "ask", "name": "Ask"}]}})
            ],
            "session/set_mode": lambda f: [err(f, -32602, "unknown mode")],
            "session/set_model": lambda f: [ok(f, {})],
        }
    )
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)
    await orchestrator.create_session("Test Agent", "/work")

    with pytest.raises(InvalidParamsError):
        await orchestrator.set_mode("yolo")
    assert orchestrator.current_mode_id == "ask"

    await orchestrator.set_model("fast")
    assert orchestrator.current_model_id == "fast"
    assert channel.requests("session/set_model")[0]["params"] == {"sessionId": "s", "modelId": "fast"}


@pytest.mark.asyncio
async def test_agent_exit_moves_active_session_to_error() -> None:
    channel = FakeChannel(basic_agent(**{"session/prompt": lambda f: None}))
    orchestrator = _orchestrator(channel)
    await orchestrator.create_session("Test Agent", "/work")

    prompt = asyncio.ensure_future(orchestrator.send_prompt("hi"))
    await asyncio.sleep(0)
    channel.drop()

    with pytest.raises(DisconnectedError):
        await prompt
    assert orchestrator.state is SessionState.ERROR
    assert orchestrator.last_error == "Agent process exited"


@pytest.mark.asyncio
async def test_disconnect_is_idempotent_and_emits_telemetry() -> None:
    events: list[tuple[str, dict]] = []
    channel = FakeChannel(basic_agent())
    orchestrator = _orchestrator(channel, telemetry=Telemetry(sinks=[lambda name, props: events.append((name, props))]))
    await orchestrator.create_session("Test Agent", "/work")
    await orchestrator.send_prompt("hello")

    await orchestrator.disconnect()
    await orchestrator.disconnect()

    assert orchestrator.state is SessionState.CLOSED
    assert channel.closed
    assert orchestrator.session is None
    assert _events(events) == ["SessionCreated", "PromptSent", "SessionDisconnected"]
    assert events[0][1] == {"agentName": "Test Agent", "success": "true"}
    assert events[1][1]["messageLength"] == "5"
    assert events[2][1]["messageCount"] == "1"


@pytest.mark.asyncio
async def test_failed_connect_emits_failure_events() -> None:
    events: list[tuple[str, dict]] = []
    channel = FakeChannel(basic_agent(**{"session/new": lambda f: [err(f, -32603, "nope")]}))
    orchestrator = _orchestrator(channel, telemetry=Telemetry(sinks=[lambda name, props: events.append((name, props))]))

    with pytest.raises(InternalRpcError):
        await orchestrator.create_session("Test Agent", "/work")

    assert _events(events) == ["SessionCreated", "Error"]
    assert events[0][1]["success"] == "false"


@pytest.mark.asyncio
async def test_can_reconnect_after_error() -> None:
    first = FakeChannel(basic_agent(**{"session/new": lambda f: [err(f, -32603, "nope")]}))
    second = FakeChannel(basic_agent("sess-2"))
    channels = iter([first, second])

    async def launch(agent_name, *, cwd=None, on_stderr=None):
        return next(channels)

    orchestrator = SessionOrchestrator(launch)
    with pytest.raises(InternalRpcError):
        await orchestrator.create_session("Test Agent", "/work")

    session = await orchestrator.create_session("Test Agent", "/work")
    assert session.session_id == "sess-2"
    assert orchestrator.state is SessionState.ACTIVE


@pytest.mark.asyncio
async def test_stderr_lines_drive_startup_phase() -> None:
    captured = {}

    async def launch(agent_name, *, cwd=None, on_stderr=None):
        captured["on_stderr"] = on_stderr
        on_stderr("npm: downloading package")
        return FakeChannel(basic_agent())

    orchestrator = SessionOrchestrator(launch)
    await orchestrator.create_session("Test Agent", "/work")

    assert orchestrator.startup_logs == ["npm: downloading package"]
    captured["on_stderr"]("ignored once active")
    assert orchestrator.startup_logs == ["npm: downloading package"]


@pytest.mark.asyncio
async def test_updates_for_other_sessions_are_ignored() -> None:
    agent = basic_agent(
        **{
            "session/prompt": lambda f: [
                text_chunk("someone-else", "intruder"),
                text_chunk("sess-1", "mine"),
                update("sess-1", {"sessionUpdate": "current_mode_update", "currentModeId": "code"}),
                ok(f, {"stopReason": "end_turn"}),
            ]
        }
    )
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)
    await orchestrator.create_session("Test Agent", "/work")

    await orchestrator.send_prompt("go")

    assert [m.content for m in orchestrator.transcript()] == ["go", "mine"]
    assert orchestrator.current_mode_id == "code"


async def _wait_for(predicate, turns: int = 200) -> None:
    for _ in range(turns):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not met")


@pytest.mark.asyncio
async def test_agent_exit_while_choosing_auth_method_is_an_error() -> None:
    agent = basic_agent(
        initialize=lambda f: [ok(f, AUTH_INIT)],
        **{"session/new": lambda f: [err(f, -32000, "Authentication required")]},
    )
    channel = FakeChannel(agent)
    orchestrator = _orchestrator(channel)

    connecting = asyncio.ensure_future(orchestrator.create_session("Test Agent", "/work"))
    await _wait_for(lambda: orchestrator.arbitrator.pending_auth is not None)
    assert orchestrator.state is SessionState.AUTHENTICATING

    channel.drop(ConnectionResetError("pipe closed"))

    with pytest.raises(DisconnectedError):
        await asyncio.wait_for(connecting, timeout=1)
    assert orchestrator.state is SessionState.ERROR
    assert orchestrator.arbitrator.pending_auth is None
    assert "pipe closed" in orchestrator.last_error
    assert orchestrator.session is None
    assert "authenticate" not in channel.methods()


@pytest.mark.asyncio
async def test_failed_first_prompt_does_not_use_up_title() -> None:
    attempts: list[int] = []

    def prompt(frame):
        attempts.append(1)
        if len(attempts) == 1:
            return [err(frame, -32603, "model overloaded")]
        return [ok(frame, {"stopReason": "end_turn"})]

    channel = FakeChannel(basic_agent(**{"session/prompt": prompt}))
    orchestrator = _orchestrator(channel)
    await orchestrator.create_session("Test Agent", "/work")

    with pytest.raises(InternalRpcError):
        await orchestrator.send_prompt("first try")
    assert orchestrator.session.title.startswith("Session ")

    await orchestrator.send_prompt("second try")
    assert orchestrator.session.title == "second try"


@pytest.mark.asyncio
async def test_updates_keep_flowing_while_permission_is_pending() -> None:
    permission = {
        "jsonrpc": "2.0",
        "id": "perm-1",
        "method": "session/request_permission",
        "params": {
            "sessionId": "sess-1",
            "toolCall": {"toolCallId": "t1", "title": "Write config", "kind": "edit", "status": "pending"},
            "options": [{"optionId": "allow", "name": "Allow", "kind": "allow_once"}],
        },
    }
    tool_call = update(
        "sess-1",
        {"sessionUpdate": "tool_call", "toolCallId": "t2", "title": "Read notes", "kind": "read", "status": "pending"},
    )
    tool_done = update("sess-1", {"sessionUpdate": "tool_call_update", "toolCallId": "t2", "status": "completed"})
    channel = FakeChannel(
        basic_agent(
            **{
                "session/prompt": lambda f: [
                    permission,
                    text_chunk("sess-1", "Waiting on you"),
                    tool_call,
                    tool_done,
                ]
            }
        )
    )
    orchestrator = _orchestrator(channel)
    await orchestrator.create_session("Test Agent", "/work")

    prompt = asyncio.ensure_future(orchestrator.send_prompt("edit it"))
    await _wait_for(lambda: orchestrator.arbitrator.pending_permission is not None)
    await _wait_for(lambda: any(call.tool_call_id == "t2" and call.status == "completed" for call in orchestrator.tool_calls()))

    assert orchestrator.arbitrator.pending_permission is not None
    assert orchestrator.transcript()[-1].content == "Waiting on you"

    orchestrator.arbitrator.resolve_permission("allow")
    await _wait_for(lambda: any(frame.get("id") == "perm-1" for frame in channel.sent))
    answer = next(frame for frame in channel.sent if frame.get("id") == "perm-1")
    assert answer["result"] == {"outcome": {"outcome": "selected", "optionId": "allow"}}

    channel.feed(ok(channel.requests("session/prompt")[0], {"stopReason": "end_turn"}))
    assert await asyncio.wait_for(prompt, timeout=1) == "end_turn"
