from .contracts import BuildResult, CredentialHandoff, Invocation, ServerDescription
from .log_writer import SessionLogPaths, SessionLogWriter
from .statechart import SessionEvent, TERMINAL_STATES, is_terminal, next_status

__all__ = [
    "BuildResult",
    "CredentialHandoff",
    "Invocation",
    "ServerDescription",
    "SessionLogPaths",
    "SessionLogWriter",
    "SessionEvent",
    "TERMINAL_STATES",
    "is_terminal",
    "next_status",
]
