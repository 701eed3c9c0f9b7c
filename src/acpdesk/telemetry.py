"""Named usage events (session created, prompt sent, ...) with pluggable sinks."""

from __future__ import annotations

import logging
from typing import Any, Callable

from acpdesk.log_utils import log_event

logger = logging.getLogger(__name__)

EventSink = Callable[[str, dict[str, str]], None]


def log_sink(name: str, properties: dict[str, str]) -> None:
    log_event(logger, f"telemetry.{name}", **properties)


class Telemetry:
    """Fan events out to sinks; a failing sink is logged and skipped."""

    def __init__(self, enabled: bool = True, sinks: list[EventSink] | None = None) -> None:
        self.enabled = enabled
        self._sinks: list[EventSink] = list(sinks) if sinks is not None else [log_sink]

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def track_event(self, name: str, **properties: Any) -> None:
        if not self.enabled:
            return
        props = {key: str(value) for key, value in properties.items() if value is not None}
        for sink in list(self._sinks):
            try:
                sink(name, props)
            except Exception as exc:  # noqa: BLE001
                logger.warning("telemetry.sink_failed event=%s error=%s", name, exc)

    def track_error(self, error: BaseException, **properties: Any) -> None:
        self.track_event(
            "Error",
            error_type=type(error).__name__,
            message=getattr(error, "message", None) or str(error),
            **properties,
        )
