"""Module entrypoint for `python -m acpdesk`."""

from __future__ import annotations

from acpdesk.client.cli import run

if __name__ == "__main__":
    run()
