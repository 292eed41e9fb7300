from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso

ThreadStatus = Literal["active", "paused", "resolved", "blocked", "abandoned"]
CLOSED_STATUSES = ("paused", "resolved", "blocked", "abandoned")


class ThreadState(BaseModel):
    """Contents of <thread>/state.json."""

    id: str
    title: str
    repos: List[str]
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    turn: int = Field(default=0, ge=0)
    status: ThreadStatus = "active"
    pending_for: List[str] = Field(default_factory=list)
    suspects: List[str] = Field(default_factory=list)
    last_message_from: Optional[str] = None
    last_message_to: Optional[str] = None
    resolution_summary: Optional[str] = None

    # Keep keys written by other collaborators across wholesale rewrites.
    model_config = ConfigDict(extra="allow")

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class ThreadSummary(BaseModel):
    id: str
    title: str
    status: ThreadStatus
    repos: List[str]
    created_at: str
    turn: int

    model_config = ConfigDict(extra="forbid")
