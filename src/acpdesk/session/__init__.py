"""Session lifecycle, transcript assembly and interaction arbitration."""

from acpdesk.session.arbitrator import InteractionArbitrator
from acpdesk.session.assembler import ConversationAssembler
from acpdesk.session.files import FileAccess, LocalFileAccess
from acpdesk.session.handlers import ClientRequestHandler
from acpdesk.session.models import Message, Session, ToolCallRecord
from acpdesk.session.orchestrator import AgentCapabilities, SessionOrchestrator, SessionState

__all__ = [
    "AgentCapabilities",
    "ClientRequestHandler",
    "ConversationAssembler",
    "FileAccess",
    "InteractionArbitrator",
    "LocalFileAccess",
    "Message",
    "Session",
    "SessionOrchestrator",
    "SessionState",
    "ToolCallRecord",
]
