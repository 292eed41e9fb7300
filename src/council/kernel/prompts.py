"""Prompt text for a pending repo's agent session."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..contracts.v1 import MESSAGE_TYPES, Message
from ..util.time import clock_hms
from .mailbox import inbox_messages_for
from .registry import Registry, RepoConfig, load_registry
from .thread import ThreadPaths, load_thread_state, thread_paths


@dataclass
class GeneratedPrompt:
    repo: str
    repo_config: RepoConfig
    prompt: str
    inbox_messages: List[Message]


def _system_section(repo: str, cfg: RepoConfig, *, thread_id: str, title: str, repos: List[str], paths: ThreadPaths) -> str:
    others = ", ".join(r for r in repos if r != repo) or "none"
    lines = [
        f"# Council Session - {repo}",
        "",
        f"You are working on the **{repo}** codebase as part of a multi-repo debugging session.",
        "",
        "## Thread Context",
        f"- **Thread ID:** {thread_id}",
        f"- **Title:** {title}",
        f"- **Your repo:** {repo}",
        f"- **Other repos in session:** {others}",
        "",
        "## Your Codebase",
        f"- **Path:** {cfg.path}",
    ]
    if cfg.tech_hints:
        lines.append(f"- **Technologies:** {', '.join(cfg.tech_hints)}")
    if cfg.quick_commands:
        lines.append("- **Quick commands:**")
        for name, cmd in cfg.quick_commands.items():
            lines.append(f"  - `{name}`: `{cmd}`")
    lines += [
        "",
        "## How to respond",
        "",
        "Write exactly one JSON file per message into the outbox directory",
        f"(`$COUNCIL_OUTBOX`, currently `{paths.outbox}`), named",
        "`<timestamp>_<from>_to_<to>.json`. Required fields:",
        "",
        "```json",
        "{",
        f'  "thread_id": "{thread_id}",',
        '  "message_id": "msg_<HHMMSS>_<rand>",',
        f'  "from": "{repo}",',
        '  "to": "<repo name or ALL>",',
        '  "type": "<message type>",',
        '  "timestamp": "<ISO-8601 UTC>",',
        '  "summary": "<one line>"',
        "}",
        "```",
        "",
        "Optional fields: `questions`, `asks`, `notes`, `evidence_refs`, `suspects`,",
        "`fix_proposal` ({\"file\", \"change\"}).",
        "",
        f"Message types: {', '.join(t for t in MESSAGE_TYPES if t != 'context_injection')}.",
        "Send `resolution` only when the problem is fixed; it closes the thread.",
        "",
    ]
    return "\n".join(lines)


def format_inbox_messages(messages: List[Message]) -> str:
    if not messages:
        return "No pending messages.\n"
    parts: List[str] = []
    for msg in messages:
        block = [f"### From: {msg.from_} | Type: {msg.type} | {clock_hms(msg.timestamp)}", "", f"**Summary:** {msg.summary}", ""]
        for label, items in (
            ("Notes", msg.notes),
            ("Questions", msg.questions),
            ("Asks", msg.asks),
            ("Evidence", msg.evidence_refs),
        ):
            if items:
                block.append(f"**{label}:**")
                block.extend(f"- {x}" for x in items)
                block.append("")
        if msg.fix_proposal is not None:
            block += [f"**Fix proposal:** `{msg.fix_proposal.file}`", "", msg.fix_proposal.change, ""]
        block += ["---", ""]
        parts.append("\n".join(block))
    return "\n".join(parts) + "\n"


def generate_prompts(
    thread_id: str, *, home: Optional[Path] = None, registry: Optional[Registry] = None
) -> List[GeneratedPrompt]:
    """One prompt per pending repo that has a registry entry."""
    reg = registry or load_registry(home)
    state = load_thread_state(thread_id, home)
    paths = thread_paths(thread_id, home)
    out: List[GeneratedPrompt] = []
    for repo in state.pending_for:
        cfg = reg.repos.get(repo)
        if cfg is None:
            continue
        inbox = inbox_messages_for(thread_id, repo, home=home)
        prompt = (
            _system_section(repo, cfg, thread_id=thread_id, title=state.title, repos=list(state.repos), paths=paths)
            + "\n## Inbox Messages\n\n"
            + format_inbox_messages(inbox)
            + "\n## Your Task\n\nReview the messages above and investigate in your codebase. "
            "When ready, respond with a message to the appropriate repo.\n"
        )
        out.append(GeneratedPrompt(repo=repo, repo_config=cfg, prompt=prompt, inbox_messages=inbox))
    return out


def generate_prompt_for_repo(
    thread_id: str, repo: str, *, home: Optional[Path] = None, registry: Optional[Registry] = None
) -> Optional[GeneratedPrompt]:
    for p in generate_prompts(thread_id, home=home, registry=registry):
        if p.repo == repo:
            return p
    return None
