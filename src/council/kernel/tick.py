"""Tick engine: advance one thread by one turn.

A tick drains outbox/ in timestamp order (transcript line, then delivery for
each message), recomputes who owes a response, detects resolution and
persists the new state. pending_for is replaced on every tick, never merged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from ..contracts.v1 import Message
from ..errors import ThreadNotActiveError
from ..util.file_lock import locked
from . import mailbox, transcript
from .registry import load_registry
from .thread import load_thread_state, save_thread_state, thread_paths

logger = logging.getLogger("council.tick")

TickOutcome = Literal["active", "resolved", "max_turns"]


@dataclass
class TickResult:
    turn: int
    status: TickOutcome
    pending_repos: List[str] = field(default_factory=list)  # before the tick
    new_pending_repos: List[str] = field(default_factory=list)
    processed_messages: List[Message] = field(default_factory=list)
    undelivered: List[str] = field(default_factory=list)  # message ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn": self.turn,
            "status": self.status,
            "pending_repos": list(self.pending_repos),
            "new_pending_repos": list(self.new_pending_repos),
            "processed_messages": [m.to_doc() for m in self.processed_messages],
            "undelivered": list(self.undelivered),
        }


def is_resolution(messages: List[Message]) -> bool:
    return any(m.type == "resolution" for m in messages)


def _require_active(thread_id: str, home: Optional[Path]):
    state = load_thread_state(thread_id, home)
    if not state.is_active:
        raise ThreadNotActiveError(
            f"Thread is {state.status}. Cannot advance.",
            details={"thread_id": thread_id, "status": state.status},
        )
    return state


def run_tick(thread_id: str, *, home: Optional[Path] = None, max_turns: Optional[int] = None) -> TickResult:
    """Run one tick. Raises ThreadNotFoundError / ThreadNotActiveError before touching anything."""
    _require_active(thread_id, home)
    limit = int(max_turns) if max_turns is not None else load_registry(home).max_turns
    paths = thread_paths(thread_id, home)

    # Ticks on the same thread serialize on the lockfile (also across processes).
    with locked(paths.tick_lock):
        state = _require_active(thread_id, home)
        if state.turn >= limit:
            logger.info(
                "max turns reached (%d)", limit, extra={"thread_id": thread_id, "turn": state.turn, "op": "tick"}
            )
            return TickResult(turn=state.turn, status="max_turns", pending_repos=list(state.pending_for))

        processed: List[Message] = []
        undelivered: List[str] = []
        for entry in mailbox.read_entries(paths.outbox):
            transcript.append_message(paths.transcript, entry.message)
            if mailbox.deliver(paths, entry) is None:
                undelivered.append(entry.message.message_id)
            processed.append(entry.message)

        new_pending = mailbox.pending_recipients(processed, state.repos)
        resolved = is_resolution(processed)

        previous = list(state.pending_for)
        state.turn += 1
        state.status = "resolved" if resolved else "active"
        state.pending_for = [] if resolved else new_pending
        if processed:
            state.last_message_from = processed[-1].from_
            state.last_message_to = processed[-1].to
        save_thread_state(state, home)

    logger.info(
        "tick done: %d message(s), status=%s, pending=%s",
        len(processed),
        state.status,
        ",".join(state.pending_for) or "-",
        extra={"thread_id": thread_id, "turn": state.turn, "op": "tick"},
    )
    return TickResult(
        turn=state.turn,
        status=state.status,  # type: ignore[arg-type]
        pending_repos=previous,
        new_pending_repos=new_pending,
        processed_messages=processed,
        undelivered=undelivered,
    )
