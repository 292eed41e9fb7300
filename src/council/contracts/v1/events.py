from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso
from .message import Message

FileEventType = Literal["add", "change"]
MailboxSide = Literal["outbox", "inbox"]


class OutboxEvent(BaseModel):
    """Debounced file notification from a thread watcher (not persisted).

    `message` is unset when the file could not be parsed yet.
    """

    type: FileEventType
    side: MailboxSide = "outbox"
    path: str
    filename: str
    message: Optional[Message] = None
    timestamp: str = Field(default_factory=utc_now_iso)
    thread_id: str

    model_config = ConfigDict(extra="forbid", frozen=True)
