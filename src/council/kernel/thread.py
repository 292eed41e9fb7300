"""Thread Store: per-thread directory layout, state.json and creation/closure."""
from __future__ import annotations

import logging
import random
import shutil
import string
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import ValidationError

from ..contracts.v1 import CLOSED_STATUSES, ThreadState, ThreadSummary
from ..errors import CouncilError, ThreadNotFoundError
from ..paths import council_home, threads_dir
from ..util.fs import atomic_write_json, atomic_write_text, read_json
from ..util.time import utc_now_iso
from . import transcript

logger = logging.getLogger("council.thread")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _rand_suffix(n: int = 4) -> str:
    return "".join(random.choice(_ID_ALPHABET) for _ in range(n))


def generate_thread_id() -> str:
    """th_YYYYMMDD_HHMMSS_xxxx (local clock)."""
    now = datetime.now()
    return f"th_{now:%Y%m%d}_{now:%H%M%S}_{_rand_suffix()}"


@dataclass(frozen=True)
class ThreadPaths:
    thread_id: str
    root: Path

    @property
    def inbox(self) -> Path:
        return self.root / "inbox"

    @property
    def outbox(self) -> Path:
        return self.root / "outbox"

    @property
    def evidence(self) -> Path:
        return self.root / "evidence"

    @property
    def artifacts(self) -> Path:
        return self.root / "artifacts"

    @property
    def prompts(self) -> Path:
        return self.root / "prompts"

    @property
    def memory(self) -> Path:
        return self.root / "memory"

    @property
    def transcript(self) -> Path:
        return self.root / "transcript.md"

    @property
    def state(self) -> Path:
        return self.root / "state.json"

    @property
    def resolution(self) -> Path:
        return self.root / "resolution.md"

    @property
    def tick_lock(self) -> Path:
        return self.root / ".tick.lock"

    def directories(self) -> List[Path]:
        return [self.root, self.inbox, self.outbox, self.evidence, self.artifacts, self.prompts, self.memory]


def thread_paths(thread_id: str, home: Optional[Path] = None) -> ThreadPaths:
    return ThreadPaths(thread_id=thread_id, root=threads_dir(home or council_home()) / thread_id)


def thread_exists(thread_id: str, home: Optional[Path] = None) -> bool:
    return thread_paths(thread_id, home).state.exists()


def create_thread(title: str, repos: Iterable[str], *, home: Optional[Path] = None) -> ThreadState:
    names: List[str] = []
    for r in repos:
        name = str(r or "").strip()
        if name and name not in names:
            names.append(name)
    if len(names) < 2:
        raise CouncilError("a thread needs at least two distinct repos", details={"repos": names})

    thread_id = generate_thread_id()
    paths = thread_paths(thread_id, home)
    for d in paths.directories():
        d.mkdir(parents=True, exist_ok=True)

    now = utc_now_iso()
    state = ThreadState(
        id=thread_id,
        title=title.strip() or "untitled",
        repos=names,
        created_at=now,
        updated_at=now,
    )
    atomic_write_json(paths.state, state.model_dump())
    atomic_write_text(
        paths.transcript,
        transcript.transcript_header(thread_id=thread_id, title=state.title, repos=names, created_at=now),
    )
    logger.info("thread created", extra={"thread_id": thread_id, "op": "thread_create"})
    return state


def load_thread_state(thread_id: str, home: Optional[Path] = None) -> ThreadState:
    paths = thread_paths(thread_id, home)
    doc = read_json(paths.state)
    if not doc:
        raise ThreadNotFoundError(f"Thread {thread_id} not found or invalid state", details={"thread_id": thread_id})
    try:
        return ThreadState.model_validate(doc)
    except ValidationError as e:
        raise ThreadNotFoundError(
            f"Thread {thread_id} not found or invalid state", details={"thread_id": thread_id}
        ) from e


def save_thread_state(state: ThreadState, home: Optional[Path] = None) -> ThreadState:
    """Rewrite state.json wholesale; `updated_at` is refreshed on every save."""
    state.updated_at = utc_now_iso()
    atomic_write_json(thread_paths(state.id, home).state, state.model_dump())
    return state


def list_threads(home: Optional[Path] = None) -> List[ThreadSummary]:
    root = threads_dir(home or council_home())
    if not root.is_dir():
        return []
    out: List[ThreadSummary] = []
    for entry in root.iterdir():
        if not entry.name.startswith("th_") or not entry.is_dir():
            continue
        try:
            st = load_thread_state(entry.name, home)
        except ThreadNotFoundError:
            continue
        out.append(
            ThreadSummary(
                id=st.id,
                title=st.title,
                status=st.status,
                repos=list(st.repos),
                created_at=st.created_at,
                turn=st.turn,
            )
        )
    out.sort(key=lambda s: s.created_at, reverse=True)
    return out


def close_thread(
    thread_id: str,
    *,
    status: str,
    summary: str = "",
    home: Optional[Path] = None,
) -> ThreadState:
    if status not in CLOSED_STATUSES:
        raise CouncilError(
            f"invalid close status: {status}", details={"allowed": list(CLOSED_STATUSES)}
        )
    state = load_thread_state(thread_id, home)
    paths = thread_paths(thread_id, home)
    now = utc_now_iso()

    state.status = status  # type: ignore[assignment]
    state.pending_for = []
    text = summary.strip()
    if text:
        state.resolution_summary = text
    save_thread_state(state, home)

    transcript.append_raw(paths.transcript, f"\n---\n\n**Closed ({status})** at {now}" + (f": {text}" if text else "") + "\n")
    if text:
        atomic_write_text(
            paths.resolution,
            f"# Resolution: {state.title}\n\n**Thread:** {thread_id}\n**Status:** {status}\n**Closed:** {now}\n\n{text}\n",
        )
    logger.info("thread closed: %s", status, extra={"thread_id": thread_id, "op": "thread_close"})
    return state


def add_evidence(thread_id: str, source: Path, *, home: Optional[Path] = None) -> str:
    """Copy a file into evidence/ and return its thread-relative ref."""
    load_thread_state(thread_id, home)
    src = Path(source)
    if not src.is_file():
        raise CouncilError(f"evidence file not found: {src}", details={"path": str(src)})
    paths = thread_paths(thread_id, home)
    paths.evidence.mkdir(parents=True, exist_ok=True)
    dst = paths.evidence / src.name
    if dst.exists():
        dst = paths.evidence / f"{src.stem}_{_rand_suffix()}{src.suffix}"
    shutil.copy2(src, dst)
    return f"evidence/{dst.name}"
