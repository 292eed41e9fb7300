from __future__ import annotations

from typing import Any, Dict, Optional


class CouncilError(Exception):
    """Base error; `code` is stable and safe to show in JSON output."""

    code = "council_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ThreadNotFoundError(CouncilError):
    code = "thread_not_found"


class ThreadNotActiveError(CouncilError):
    code = "thread_not_active"


class RegistryError(CouncilError):
    code = "registry_invalid"


class RepoNotFoundError(CouncilError):
    code = "repo_not_found"


class RepoNotPendingError(CouncilError):
    code = "repo_not_pending"


class SpawnError(CouncilError):
    code = "spawn_failed"


class SessionNotFoundError(CouncilError):
    code = "session_not_found"


class SessionTimeoutError(CouncilError):
    code = "session_timeout"


class SessionError(CouncilError):
    """The session's process failed (spawn or wait error)."""

    code = "session_error"
