"""Line-oriented duplex channels to agent processes."""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import contextlib
import logging
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_STDIO_BUFFER_LIMIT_BYTES = 50 * 1024 * 1024
_MIN_STDIO_BUFFER_LIMIT_BYTES = 64 * 1024
_TERMINATE_GRACE_S = 3.0

LineCallback = Callable[[str], None]
CloseCallback = Callable[[BaseException | None], None]


class Channel(Protocol):
    async def send(self, line: str) -> None: ...

    def on_line(self, callback: LineCallback) -> None: ...

    def on_close(self, callback: CloseCallback) -> None: ...

    async def close(self) -> None: ...


ChannelLauncher = Callable[..., Awaitable[Channel]]


def stdio_buffer_limit(raw_value: str | None = None) -> int:
    """Return the stream reader limit, honouring ACPDESK_STDIO_BUFFER_LIMIT_BYTES."""
    if raw_value is None:
        raw_value = os.getenv("ACPDESK_STDIO_BUFFER_LIMIT_BYTES")
    if raw_value is None:
        return DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    try:
        parsed = int(raw_value)
    except ValueError:
        return DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    return max(parsed, _MIN_STDIO_BUFFER_LIMIT_BYTES)


def detect_startup_phase(line: str) -> str | None:
    """Guess what a starting agent is doing from one of its stderr lines."""
    lower = line.lower()
    if "download" in lower or "fetch" in lower or "get " in lower:
        return "downloading"
    if "install" in lower or "added" in lower or "packages" in lower:
        return "installing"
    if "build" in lower or "compil" in lower:
        return "building"
    if "start" in lower or "spawn" in lower:
        return "starting"
    return None


class ProcessChannel:
    """Channel backed by an agent subprocess' stdin/stdout.

    Stdout is read line by line once the first line callback is registered,
    so nothing the agent prints early is lost. Stderr lines go to the
    ``on_stderr`` callbacks and are otherwise only logged.
    """

    def __init__(self, proc: aio_subprocess.Process, *, name: str) -> None:
        self._proc = proc
        self._name = name
        self._line_callbacks: list[LineCallback] = []
        self._close_callbacks: list[CloseCallback] = []
        self._stderr_callbacks: list[LineCallback] = []
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._closing = False
        self._closed_notified = False

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: Sequence[str] = (),
        *,
        name: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        limit: int | None = None,
    ) -> "ProcessChannel":
        program = command
        program_args = list(args)
        program_path = Path(command)
        if program_path.exists() and not os.access(program_path, os.X_OK):
            program = sys.executable
            program_args = [str(program_path), *program_args]

        proc = await asyncio.create_subprocess_exec(
            program,
            *program_args,
            stdin=aio_subprocess.PIPE,
            stdout=aio_subprocess.PIPE,
            stderr=aio_subprocess.PIPE,
            env={**os.environ, **(env or {})},
            cwd=cwd,
            limit=limit or stdio_buffer_limit(),
        )
        if proc.stdin is None or proc.stdout is None:
            raise RuntimeError("Agent process does not expose stdio pipes")
        logger.info("agent.spawned name=%s pid=%s command=%s", name or command, proc.pid, command)
        channel = cls(proc, name=name or command)
        channel._stderr_task = asyncio.ensure_future(channel._read_stderr())
        return channel

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    def on_line(self, callback: LineCallback) -> None:
        self._line_callbacks.append(callback)
        if self._stdout_task is None:
            self._stdout_task = asyncio.ensure_future(self._read_stdout())

    def on_close(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    def on_stderr(self, callback: LineCallback) -> None:
        self._stderr_callbacks.append(callback)

    async def send(self, line: str) -> None:
        stdin = self._proc.stdin
        if self._closing or stdin is None or stdin.is_closing():
            raise ConnectionResetError(f"Agent {self._name} stdin is closed")
        stdin.write((line + "\n").encode("utf-8"))
        await stdin.drain()

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            with contextlib.suppress(Exception):
                stdin.close()
        if self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=_TERMINATE_GRACE_S)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    self._proc.kill()
                await self._proc.wait()
        for task in (self._stdout_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        logger.info("agent.stopped name=%s returncode=%s", self._name, self._proc.returncode)
        self._notify_closed(None)

    async def _read_stdout(self) -> None:
        assert self._proc.stdout is not None
        error: BaseException | None = None
        try:
            while True:
                raw = await self._proc.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                for callback in list(self._line_callbacks):
                    callback(line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - reported through on_close
            logger.error("agent.stdout_failed name=%s error=%s", self._name, exc)
            error = exc
        self._notify_closed(error)

    async def _read_stderr(self) -> None:
        if self._proc.stderr is None:
            return
        while True:
            raw = await self._proc.stderr.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            logger.debug("agent.stderr name=%s line=%s", self._name, line)
            for callback in list(self._stderr_callbacks):
                callback(line)

    def _notify_closed(self, error: BaseException | None) -> None:
        if self._closed_notified:
            return
        self._closed_notified = True
        for callback in list(self._close_callbacks):
            callback(error)
