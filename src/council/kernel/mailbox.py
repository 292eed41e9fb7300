"""Mailbox: one JSON file per message under a thread's outbox/ and inbox/.

Delivery is a rename from outbox/ to inbox/ and is only performed by the tick
engine. Readers see a message either fully valid or not at all.
"""
from __future__ import annotations

import json
import logging
import random
import string
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from ..contracts.v1 import BROADCAST, FixProposal, Message, MessageContext
from ..util.fs import atomic_write_text, move_file
from ..util.time import compact_timestamp, utc_now_iso
from .thread import ThreadPaths, thread_paths

logger = logging.getLogger("council.mailbox")

_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class MailboxEntry:
    """A parsed message together with the file it was read from."""

    path: Path
    message: Message


@dataclass(frozen=True)
class SkippedFile:
    """A *.json file that did not parse this pass; left in place for a later one."""

    path: Path
    reason: str


ScanResult = Union[MailboxEntry, SkippedFile]


def generate_message_id() -> str:
    """msg_HHMMSS_xxxx (local clock)."""
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(4))
    return f"msg_{datetime.now():%H%M%S}_{suffix}"


def message_filename(message: Message) -> str:
    return f"{compact_timestamp(message.timestamp)}_{message.from_}_to_{message.to}.json"


def create_message(
    *,
    thread_id: str,
    from_: str,
    to: str,
    type: str,
    summary: str,
    context: Optional[MessageContext] = None,
    evidence_refs: Optional[List[str]] = None,
    questions: Optional[List[str]] = None,
    asks: Optional[List[str]] = None,
    notes: Optional[List[str]] = None,
    suspects: Optional[List[str]] = None,
    fix_proposal: Optional[FixProposal] = None,
    timestamp: str = "",
) -> Message:
    return Message.model_validate(
        {
            "thread_id": thread_id,
            "message_id": generate_message_id(),
            "from": from_,
            "to": to,
            "type": type,
            "timestamp": timestamp or utc_now_iso(),
            "summary": summary,
            "context": context,
            "evidence_refs": evidence_refs,
            "questions": questions,
            "asks": asks,
            "notes": notes,
            "suspects": suspects,
            "fix_proposal": fix_proposal,
        }
    )


def validate_message(data: Any) -> Tuple[bool, Union[Message, str]]:
    try:
        return True, Message.model_validate(data)
    except ValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(x) for x in i.get('loc', ()))}: {i.get('msg', '')}" for i in e.errors()
        )
        return False, issues


def parse_message_file(path: Path) -> ScanResult:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        return SkippedFile(path=path, reason=f"unreadable: {e}")
    try:
        data = json.loads(raw)
    except ValueError as e:
        return SkippedFile(path=path, reason=f"invalid json: {e}")
    ok, result = validate_message(data)
    if not ok:
        return SkippedFile(path=path, reason=f"invalid message: {result}")
    assert isinstance(result, Message)
    return MailboxEntry(path=path, message=result)


def _json_files(directory: Path) -> List[Path]:
    try:
        names = sorted(p for p in directory.iterdir() if p.name.endswith(".json") and p.is_file())
    except OSError:
        return []
    return names


def scan_messages(directory: Path) -> List[ScanResult]:
    """Per-file outcome for every *.json file, in filename order."""
    return [parse_message_file(p) for p in _json_files(directory)]


def read_entries(directory: Path) -> List[MailboxEntry]:
    entries: List[MailboxEntry] = []
    for res in scan_messages(directory):
        if isinstance(res, SkippedFile):
            logger.debug("skipping %s (%s)", res.path.name, res.reason, extra={"path": str(res.path)})
            continue
        entries.append(res)
    # Timestamp is the only ordering key; ties keep filename order.
    entries.sort(key=lambda e: e.message.timestamp)
    return entries


def read_messages(directory: Path) -> List[Message]:
    return [e.message for e in read_entries(directory)]


def _write_message(directory: Path, message: Message) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / message_filename(message)
    if target.exists():
        prior = parse_message_file(target)
        if not (isinstance(prior, MailboxEntry) and prior.message.message_id == message.message_id):
            # Same minute, same route: keep both files.
            target = directory / f"{target.stem}_{message.message_id}.json"
    atomic_write_text(target, json.dumps(message.to_doc(), ensure_ascii=False, indent=2) + "\n")
    return target


def write_outbox_message(message: Message, *, home: Optional[Path] = None) -> Path:
    return _write_message(thread_paths(message.thread_id, home).outbox, message)


def write_inbox_message(message: Message, *, home: Optional[Path] = None) -> Path:
    return _write_message(thread_paths(message.thread_id, home).inbox, message)


def read_outbox_messages(thread_id: str, *, home: Optional[Path] = None) -> List[Message]:
    return read_messages(thread_paths(thread_id, home).outbox)


def read_inbox_messages(thread_id: str, *, home: Optional[Path] = None) -> List[Message]:
    return read_messages(thread_paths(thread_id, home).inbox)


def addressed_to(message: Message, repo: str) -> bool:
    return message.is_broadcast or message.to == repo


def inbox_messages_for(thread_id: str, repo: str, *, home: Optional[Path] = None) -> List[Message]:
    return [m for m in read_inbox_messages(thread_id, home=home) if addressed_to(m, repo)]


def _inbox_target(paths: ThreadPaths, src: Path, message: Message) -> Path:
    dst = paths.inbox / src.name
    if dst.exists():
        dst = paths.inbox / f"{src.stem}_{message.message_id}.json"
    return dst


def _fallback_candidates(outbox: Path, message: Message) -> List[Path]:
    out: List[Path] = []
    for p in _json_files(outbox):
        name = p.name
        if message.message_id in name or (message.from_ in name and message.to in name):
            out.append(p)
    return out


def deliver(paths: ThreadPaths, entry: MailboxEntry) -> Optional[Path]:
    """Move the entry's file from outbox/ to inbox/.

    Tries the file that was parsed, then the derived filename, then a scan of
    outbox/ matching on message id or sender/recipient. Returns the inbox path,
    or None when nothing could be found (the message is dropped for this tick).
    """
    msg = entry.message
    derived = paths.outbox / message_filename(msg)
    for src in (entry.path, derived):
        if src.parent != paths.outbox:
            continue
        try:
            dst = _inbox_target(paths, src, msg)
            move_file(src, dst)
            return dst
        except FileNotFoundError:
            continue

    for src in _fallback_candidates(paths.outbox, msg):
        try:
            dst = _inbox_target(paths, src, msg)
            move_file(src, dst)
        except FileNotFoundError:
            continue
        logger.info(
            "delivered %s via fallback match %s",
            msg.message_id,
            src.name,
            extra={"thread_id": paths.thread_id, "message_id": msg.message_id},
        )
        return dst

    logger.warning(
        "undeliverable message %s (%s -> %s): file not found in outbox",
        msg.message_id,
        msg.from_,
        msg.to,
        extra={"thread_id": paths.thread_id, "message_id": msg.message_id},
    )
    return None


def clear_inbox_for(thread_id: str, repo: str, *, home: Optional[Path] = None) -> int:
    """Remove delivered files addressed to repo (or ALL). Returns the count removed."""
    paths = thread_paths(thread_id, home)
    cleared = 0
    for res in scan_messages(paths.inbox):
        if isinstance(res, SkippedFile):
            name = res.path.name
            match = name.endswith(f"_to_{repo}.json") or name.endswith(f"_to_{BROADCAST}.json")
        else:
            match = addressed_to(res.message, repo)
        if not match:
            continue
        try:
            res.path.unlink()
            cleared += 1
        except FileNotFoundError:
            continue
    return cleared


def pending_recipients(messages: Sequence[Message], repos: Sequence[str]) -> List[str]:
    """Repos addressed by messages: broadcast adds everyone but the sender."""
    pending: List[str] = []
    for msg in messages:
        if msg.is_broadcast:
            targets = [r for r in repos if r != msg.from_]
        elif msg.to in repos:
            targets = [msg.to]
        else:
            targets = []
        for r in targets:
            if r not in pending:
                pending.append(r)
    return pending
