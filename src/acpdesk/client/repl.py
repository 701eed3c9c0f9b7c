"""Interactive REPL loop for a connected session."""

from __future__ import annotations

import logging
import sys

from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.key_binding import KeyBindings  # type: ignore

from acpdesk.client.display import print_error, print_notice, print_status
from acpdesk.client.slash import handle_slash_command
from acpdesk.client.state import UIState
from acpdesk.errors import RpcError
from acpdesk.session.orchestrator import SessionOrchestrator, SessionState

logger = logging.getLogger(__name__)

CANCEL_TOKEN = "__CANCEL__"


def prompt_label(orchestrator: SessionOrchestrator) -> str:
    mode = orchestrator.current_mode_id or "default"
    model = orchestrator.current_model_id
    return f"{mode}|{model}> " if model else f"{mode}> "


async def interactive_loop(orchestrator: SessionOrchestrator, state: UIState) -> None:
    """Read prompts until EOF or /exit; Esc at the prompt cancels the running turn."""
    kb = KeyBindings()

    @kb.add("escape")
    def _(event):  # type: ignore
        if not event.app.is_done:
            event.app.exit(result=CANCEL_TOKEN)

    session: PromptSession = PromptSession(key_bindings=kb)
    if state.show_status_on_start:
        print_status(orchestrator, state)
        state.show_status_on_start = False

    while orchestrator.state is SessionState.ACTIVE:
        try:
            line = await session.prompt_async(prompt_label(orchestrator))
        except EOFError:
            break
        except KeyboardInterrupt:
            print("", file=sys.stderr)
            continue

        if line == CANCEL_TOKEN:
            try:
                await orchestrator.cancel()
            except RpcError as exc:
                logger.error("Cancel failed: %s", exc.message)
                print_error(f"[cancel failed: {exc.message}]")
                continue
            print_notice("[cancelled]")
            continue
        if not line.strip():
            continue
        if line.startswith("/") and await handle_slash_command(line, orchestrator, state):
            continue

        try:
            stop_reason = await orchestrator.send_prompt(line)
        except RpcError as exc:
            logger.error("Prompt failed: %s", exc.message)
            print_error(f"\n[prompt failed: {exc.message}]")
            continue
        finally:
            if state.pending_newline:
                print()
                state.pending_newline = False
        if stop_reason and stop_reason != "end_turn":
            print_notice(f"[stopped: {stop_reason}]", style="yellow")

    if orchestrator.state is SessionState.ERROR:
        print_error(f"[disconnected: {orchestrator.last_error or 'agent exited'}]")
