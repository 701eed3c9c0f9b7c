"""Bounded, filterable log of every frame crossing the multiplexer."""

from __future__ import annotations

import json
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Literal

TrafficDirection = Literal["in", "out"]
TrafficType = Literal["request", "response", "notification"]
TrafficFilter = Literal["all", "requests", "responses", "notifications"]

MAX_TRAFFIC_ENTRIES = 500

_FILTER_TYPES: dict[str, str] = {
    "requests": "request",
    "responses": "response",
    "notifications": "notification",
}


@dataclass(frozen=True)
class TrafficEntry:
    id: str
    timestamp: float
    direction: TrafficDirection
    type: TrafficType
    method: str
    payload: Any
    request_id: int | str | None = None
    error: bool = False
    source: str | None = None


class TrafficRecorder:
    """Ring buffer of frames, shared by every connection in the process.

    Entries from different agents interleave by arrival time only. Pausing
    stops recording; it has no effect on the frames themselves.
    """

    def __init__(self, max_entries: int = MAX_TRAFFIC_ENTRIES) -> None:
        self._entries: deque[TrafficEntry] = deque(maxlen=max_entries)
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def toggle_pause(self) -> bool:
        self._paused = not self._paused
        return self._paused

    def clear(self) -> None:
        self._entries.clear()

    def record(
        self,
        *,
        direction: TrafficDirection,
        type: TrafficType,  # noqa: A002 - mirrors the entry field
        method: str,
        payload: Any,
        request_id: int | str | None = None,
        error: bool = False,
        source: str | None = None,
    ) -> TrafficEntry | None:
        if self._paused:
            return None
        entry = TrafficEntry(
            id=str(uuid.uuid4()),
            timestamp=time.time(),
            direction=direction,
            type=type,
            method=method,
            payload=payload,
            request_id=request_id,
            error=error,
            source=source,
        )
        self._entries.append(entry)
        return entry

    def entries(self) -> list[TrafficEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def filtered(self, kind: TrafficFilter = "all", query: str = "") -> list[TrafficEntry]:
        """Return entries matching a frame-type filter and a free-text query.

        The query is matched case-insensitively against the method name and
        the JSON-serialized payload.
        """
        result = list(self._entries)
        wanted = _FILTER_TYPES.get(kind)
        if wanted is not None:
            result = [entry for entry in result if entry.type == wanted]
        needle = query.strip().lower()
        if needle:
            result = [
                entry
                for entry in result
                if needle in entry.method.lower() or needle in _serialize(entry.payload).lower()
            ]
        return result


def _serialize(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(payload)
