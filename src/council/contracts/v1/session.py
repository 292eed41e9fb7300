from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

SessionStatus = Literal["running", "exited", "error"]
SessionEventKind = Literal["stdout", "stderr", "exit", "error"]


class SessionState(BaseModel):
    """Inspection snapshot of one spawned agent process."""

    thread_id: str
    repo: str
    pid: int
    cwd: str
    started_at: str
    status: SessionStatus
    exit_code: Optional[int] = None
    error: Optional[str] = None

    model_config = ConfigDict(extra="forbid")
