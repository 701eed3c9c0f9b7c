"""Load MCP server definitions passed to session/new and session/load."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from acp.schema import EnvVariable, HttpHeader, HttpMcpServer, SseMcpServer, StdioMcpServer

logger = logging.getLogger(__name__)


def load_mcp_config(path: str | Path) -> list[Any]:
    """Read a JSON array of stdio/http/sse entries into ACP schema objects.

    Unreadable files and non-array documents yield an empty list; entries of an
    unknown type or missing their command/url are skipped.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("mcp_config.read_failed path=%s error=%s", path, exc)
        return []

    if isinstance(data, dict):
        data = data.get("mcpServers", data.get("mcp_servers"))
    if not isinstance(data, list):
        logger.error("mcp_config.invalid path=%s reason=not_an_array", path)
        return []

    servers: list[Any] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        server = _server_from_entry(entry)
        if server is None:
            logger.warning("mcp_config.entry_skipped name=%s type=%s", entry.get("name"), entry.get("type"))
            continue
        servers.append(server)
    return servers


def server_name(server: Any) -> str:
    if isinstance(server, dict):
        return str(server.get("name") or "<server>")
    return str(getattr(server, "name", "") or "<server>")


def _server_from_entry(entry: dict[str, Any]) -> Any | None:
    stype = entry.get("type", "stdio")
    name = entry.get("name") or ""
    if stype == "stdio":
        command = entry.get("command")
        if not command:
            return None
        return StdioMcpServer(
            name=name,
            command=command,
            args=[str(arg) for arg in entry.get("args", [])],
            env=[EnvVariable(name=name_, value=value) for name_, value in _pairs(entry.get("env"))],
        )
    if stype in ("http", "sse"):
        url = entry.get("url")
        if not url:
            return None
        model = HttpMcpServer if stype == "http" else SseMcpServer
        return model(
            name=name,
            url=url,
            headers=[HttpHeader(name=name_, value=value) for name_, value in _pairs(entry.get("headers"))],
        )
    return None


def _pairs(raw: Any) -> list[tuple[str, str]]:
    """Accept ``[{"name": .., "value": ..}]`` or a plain ``{name: value}`` mapping."""
    if isinstance(raw, dict):
        return [(str(key), str(value)) for key, value in raw.items()]
    pairs: list[tuple[str, str]] = []
    for item in raw or []:
        if isinstance(item, dict) and "name" in item and "value" in item:
            pairs.append((str(item["name"]), str(item["value"])))
    return pairs
