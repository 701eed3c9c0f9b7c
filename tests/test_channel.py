from __future__ import annotations

import asyncio
import sys

import pytest

from acpdesk.bridge.channel import (
    DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
    ProcessChannel,
    detect_startup_phase,
    stdio_buffer_limit,
)
from acpdesk.bridge.launcher import ProcessLauncher
from acpdesk.config import AgentConfig, AgentsConfig, UnknownAgentError

ECHO_SCRIPT = (
    "import sys\n"
    "sys.stderr.write('starting echo\\n'); sys.stderr.flush()\n"
    "for line in sys.stdin:\n"
    "    sys.stdout.write(line); sys.stdout.flush()\n"
)


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_stdio_buffer_limit_parsing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ACPDESK_STDIO_BUFFER_LIMIT_BYTES", raising=False)
    assert stdio_buffer_limit() == DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    assert stdio_buffer_limit("junk") == DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    assert stdio_buffer_limit("10") == 64 * 1024
    assert stdio_buffer_limit(str(1024 * 1024)) == 1024 * 1024


@pytest.mark.parametrize(
    ("line", "phase"),
    [
        ("npm http fetch GET 200 https://registry.npmjs.org/x", "downloading"),
        ("added 12 packages in 3s", "installing"),
        ("Compiling agent v0.1.0", "building"),
        ("Server started", "starting"),
        ("hello", None),
    ],
)
def test_detect_startup_phase(line: str, phase: str | None) -> None:
    assert detect_startup_phase(line) == phase


@pytest.mark.asyncio
async def test_process_channel_round_trip_and_close() -> None:
    channel = await ProcessChannel.spawn(sys.executable, ["-c", ECHO_SCRIPT], name="echo")
    lines: list[str] = []
    stderr: list[str] = []
    closed: list[BaseException | None] = []
    channel.on_stderr(stderr.append)
    channel.on_line(lines.append)
    channel.on_close(closed.append)

    await channel.send('{"jsonrpc":"2.0","method":"ping"}')
    await _wait_for(lambda: lines)
    await _wait_for(lambda: stderr)

    assert lines == ['{"jsonrpc":"2.0","method":"ping"}']
    assert stderr == ["starting echo"]

    await channel.close()
    await channel.close()
    assert closed == [None]
    with pytest.raises(ConnectionResetError):
        await channel.send("late")


@pytest.mark.asyncio
async def test_process_exit_fires_close_once() -> None:
    channel = await ProcessChannel.spawn(sys.executable, ["-c", "print('bye')"], name="short")
    lines: list[str] = []
    closed: list[BaseException | None] = []
    channel.on_close(closed.append)
    channel.on_line(lines.append)

    await _wait_for(lambda: closed)
    await channel.close()

    assert lines == ["bye"]
    assert closed == [None]


@pytest.mark.asyncio
async def test_launcher_spawns_registered_agent() -> None:
    agents = AgentsConfig({"Echo": AgentConfig(command=sys.executable, args=["-c", ECHO_SCRIPT])})
    launcher = ProcessLauncher(agents)
    stderr: list[str] = []

    channel = await launcher("Echo", on_stderr=stderr.append)
    try:
        await _wait_for(lambda: stderr)
        assert channel.pid is not None
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_launcher_rejects_unknown_agent() -> None:
    launcher = ProcessLauncher(AgentsConfig({}))

    with pytest.raises(UnknownAgentError):
        await launcher("Missing")
