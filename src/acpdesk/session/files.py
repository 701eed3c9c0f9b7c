"""Local file access used to answer the agent's fs/* requests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol


class FileAccess(Protocol):
    async def read_text(self, path: str, line: int | None = None, limit: int | None = None) -> str: ...

    async def write_text(self, path: str, content: str) -> None: ...


class LocalFileAccess:
    """Read and write text files on this machine.

    Relative paths resolve against ``cwd`` (the session's working directory).
    ``line`` is 1-based; a positive ``limit`` caps the number of lines returned,
    while a missing or zero ``limit`` reads to the end of the file. Errors
    propagate so the agent receives an error response.
    """

    def __init__(self, cwd: str | Path | None = None) -> None:
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()

    def resolve(self, path_str: str) -> Path:
        path = Path(path_str).expanduser()
        if not path.is_absolute():
            path = self.cwd / path
        return path.resolve()

    async def read_text(self, path: str, line: int | None = None, limit: int | None = None) -> str:
        target = self.resolve(path)
        content = await asyncio.to_thread(target.read_text, encoding="utf-8")
        if line is None and limit is None:
            return content
        lines = content.split("\n")
        start = max((line or 1) - 1, 0)
        end = start + limit if limit and limit > 0 else len(lines)
        return "\n".join(lines[start:end])

    async def write_text(self, path: str, content: str) -> None:
        target = self.resolve(path)
        await asyncio.to_thread(_write, target, content)


def _write(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
