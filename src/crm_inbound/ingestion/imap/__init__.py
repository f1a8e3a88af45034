"""IMAP channel: TLS session handling, catch-up reader and connection supervisor."""

from .connection_manager import FailureKind, ImapConnection, ReconnectPolicy, classify_failure
from .message_reader import MessageReader, to_raw_message
from .supervisor import ImapSupervisor, SupervisorState

__all__ = [
    "FailureKind",
    "ImapConnection",
    "ImapSupervisor",
    "MessageReader",
    "ReconnectPolicy",
    "SupervisorState",
    "classify_failure",
    "to_raw_message",
]
