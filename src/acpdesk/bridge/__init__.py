"""Wire-level pieces: frames, channels, the RPC multiplexer and traffic log."""

from acpdesk.bridge.channel import Channel, ProcessChannel, detect_startup_phase  # noqa: F401
from acpdesk.bridge.frames import Notification, Request, Response, parse_frame  # noqa: F401
from acpdesk.bridge.multiplexer import DEFAULT_REQUEST_TIMEOUT_S, RpcMultiplexer  # noqa: F401
from acpdesk.bridge.traffic import MAX_TRAFFIC_ENTRIES, TrafficEntry, TrafficRecorder  # noqa: F401

__all__ = [
    "Channel",
    "DEFAULT_REQUEST_TIMEOUT_S",
    "MAX_TRAFFIC_ENTRIES",
    "Notification",
    "ProcessChannel",
    "Request",
    "Response",
    "RpcMultiplexer",
    "TrafficEntry",
    "TrafficRecorder",
    "detect_startup_phase",
    "parse_frame",
]
