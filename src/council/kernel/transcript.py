from __future__ import annotations

from pathlib import Path
from typing import Iterable

from ..contracts.v1 import HUMAN, Message
from ..util.fs import append_text
from ..util.time import clock_hms, utc_now_iso

# Types implied by the arrow alone; everything else gets a "(type)" suffix.
_UNTAGGED_TYPES = ("question", "context_injection")


def transcript_header(*, thread_id: str, title: str, repos: Iterable[str], created_at: str = "") -> str:
    return (
        f"# Thread: {title}\n"
        "\n"
        f"**ID:** {thread_id}\n"
        f"**Created:** {created_at or utc_now_iso()}\n"
        f"**Repos:** {', '.join(repos)}\n"
        "\n"
        "---\n"
        "\n"
        "## Timeline\n"
        "\n"
    )


def format_entry(message: Message) -> str:
    arrow = ">>>" if message.from_ == HUMAN else "->"
    entry = f"[{clock_hms(message.timestamp)}] {message.from_} {arrow} {message.to}: {message.summary}"
    if message.type not in _UNTAGGED_TYPES:
        entry += f" ({message.type})"
    return entry + "\n"


def append_message(transcript_path: Path, message: Message) -> None:
    append_text(transcript_path, format_entry(message))


def append_raw(transcript_path: Path, text: str) -> None:
    append_text(transcript_path, text)


def read_transcript(transcript_path: Path) -> str:
    try:
        return transcript_path.read_text(encoding="utf-8")
    except OSError:
        return ""
