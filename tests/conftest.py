from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_home(tmp_path_factory, monkeypatch):
    """Force tests to use a temporary HOME/XDG dirs to avoid touching real config."""
    base = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(base))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(base / ".config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / ".local" / "state"))
    monkeypatch.setenv("XDG_DATA_HOME", str(base / ".local" / "share"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(base / ".cache"))
    monkeypatch.delenv("ACPDESK_AGENTS_FILE", raising=False)
    monkeypatch.delenv("ACPDESK_REQUEST_TIMEOUT_S", raising=False)
    for name in (
        "ACPDESK_LOG_DIR",
        "ACPDESK_LOG_LEVEL",
        "ACPDESK_LOG_STDERR",
        "ACPDESK_LOG_JSON",
        "ACPDESK_LOG_FRAMES",
        "ACPDESK_LOG_MAX_BYTES",
        "ACPDESK_LOG_BACKUPS",
        "ACPDESK_STDIO_BUFFER_LIMIT_BYTES",
        "ACPDESK_TELEMETRY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(Path, "home", lambda: base)
