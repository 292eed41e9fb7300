from __future__ import annotations

from .events import FileEventType, MailboxSide, OutboxEvent
from .message import BROADCAST, HUMAN, MESSAGE_TYPES, FixProposal, Message, MessageContext, MessageType
from .session import SessionEventKind, SessionState, SessionStatus
from .thread import CLOSED_STATUSES, ThreadState, ThreadStatus, ThreadSummary

__all__ = [
    "BROADCAST",
    "CLOSED_STATUSES",
    "FileEventType",
    "FixProposal",
    "HUMAN",
    "MESSAGE_TYPES",
    "MailboxSide",
    "Message",
    "MessageContext",
    "MessageType",
    "OutboxEvent",
    "SessionEventKind",
    "SessionState",
    "SessionStatus",
    "ThreadState",
    "ThreadStatus",
    "ThreadSummary",
]
