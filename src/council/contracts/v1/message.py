from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

HUMAN = "HUMAN"
BROADCAST = "ALL"

MessageType = Literal[
    "question",
    "answer",
    "request_evidence",
    "hypothesis",
    "repro",
    "patch_proposal",
    "decision",
    "resolution",
    "context_injection",  # from HUMAN
]

MESSAGE_TYPES = (
    "question",
    "answer",
    "request_evidence",
    "hypothesis",
    "repro",
    "patch_proposal",
    "decision",
    "resolution",
    "context_injection",
)


class MessageContext(BaseModel):
    env: Optional[str] = None
    time_window: Optional[str] = None
    request_id: Optional[str] = None
    commit: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class FixProposal(BaseModel):
    file: str
    change: str

    model_config = ConfigDict(extra="ignore")


class Message(BaseModel):
    """One immutable message file in a thread's outbox/inbox."""

    thread_id: str
    message_id: str
    from_: str = Field(alias="from")  # repo name or HUMAN
    to: str  # repo name or ALL
    type: MessageType
    timestamp: str
    summary: str
    context: Optional[MessageContext] = None
    evidence_refs: Optional[List[str]] = None
    questions: Optional[List[str]] = None
    asks: Optional[List[str]] = None
    notes: Optional[List[str]] = None
    suspects: Optional[List[str]] = None
    fix_proposal: Optional[FixProposal] = None

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    @property
    def is_broadcast(self) -> bool:
        return self.to == BROADCAST

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
