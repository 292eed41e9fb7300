from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from ..contracts.v1 import BROADCAST, HUMAN, Message
from ..errors import RepoNotFoundError
from .mailbox import create_message, write_outbox_message
from .thread import load_thread_state


def ask(
    thread_id: str,
    *,
    to: str,
    summary: str,
    questions: Optional[List[str]] = None,
    home: Optional[Path] = None,
) -> Message:
    """Queue a human question for the next tick."""
    state = load_thread_state(thread_id, home)
    if to != BROADCAST and to not in state.repos:
        raise RepoNotFoundError(
            f'Repo "{to}" is not part of thread {thread_id}', details={"repo": to, "repos": state.repos}
        )
    msg = create_message(
        thread_id=thread_id,
        from_=HUMAN,
        to=to,
        type="context_injection",
        summary=summary,
        questions=list(questions) if questions else None,
    )
    write_outbox_message(msg, home=home)
    return msg


def interrupt(thread_id: str, *, note: str, home: Optional[Path] = None) -> Message:
    """Broadcast a human note to every repo in the thread."""
    load_thread_state(thread_id, home)
    msg = create_message(
        thread_id=thread_id,
        from_=HUMAN,
        to=BROADCAST,
        type="context_injection",
        summary=next((ln.strip() for ln in note.splitlines() if ln.strip()), "(interrupt)"),
        notes=[note],
    )
    write_outbox_message(msg, home=home)
    return msg
