from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from . import __version__
from .contracts.v1 import BROADCAST, CLOSED_STATUSES
from .errors import CouncilError
from .kernel.human import ask, interrupt
from .kernel.prompts import generate_prompt_for_repo, generate_prompts
from .kernel.registry import load_registry, validate_repos
from .kernel.thread import add_evidence, close_thread, create_thread, list_threads, load_thread_state, thread_paths
from .kernel.tick import run_tick
from .kernel.transcript import read_transcript
from .kernel.workspace import init_workspace
from .runners.spawner import SessionEvent, SpawnOptions, Supervisor, spawn_all_pending
from .util.obslog import setup_root_json_logging


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _split_csv(values: List[str]) -> List[str]:
    out: List[str] = []
    for v in values:
        for part in str(v or "").split(","):
            p = part.strip()
            if p and p not in out:
                out.append(p)
    return out


def cmd_init(args: argparse.Namespace) -> int:
    home = init_workspace()
    _print_json({"ok": True, "result": {"home": str(home)}})
    return 0


def cmd_thread_new(args: argparse.Namespace) -> int:
    repos = _split_csv(args.repos)
    validate_repos(load_registry(), repos)
    state = create_thread(args.title, repos)
    _print_json({"ok": True, "result": {"thread": state.model_dump(), "path": str(thread_paths(state.id).root)}})
    return 0


def cmd_thread_list(args: argparse.Namespace) -> int:
    threads = list_threads()
    if args.status:
        threads = [t for t in threads if t.status == args.status]
    _print_json({"ok": True, "result": {"threads": [t.model_dump() for t in threads]}})
    return 0


def cmd_thread_show(args: argparse.Namespace) -> int:
    state = load_thread_state(args.thread_id)
    _print_json({"ok": True, "result": {"thread": state.model_dump(), "path": str(thread_paths(state.id).root)}})
    return 0


def cmd_ask(args: argparse.Namespace) -> int:
    msg = ask(args.thread, to=args.to, summary=args.summary, questions=list(args.question or []) or None)
    _print_json({"ok": True, "result": {"message": msg.to_doc()}})
    return 0


def cmd_interrupt(args: argparse.Namespace) -> int:
    msg = interrupt(args.thread, note=args.note)
    _print_json({"ok": True, "result": {"message": msg.to_doc()}})
    return 0


def cmd_add_evidence(args: argparse.Namespace) -> int:
    ref = add_evidence(args.thread, Path(args.file))
    _print_json({"ok": True, "result": {"ref": ref}})
    return 0


def cmd_tick(args: argparse.Namespace) -> int:
    result = run_tick(args.thread, max_turns=args.max_turns)
    _print_json({"ok": True, "result": result.to_dict()})
    return 0


def cmd_prompts(args: argparse.Namespace) -> int:
    if args.repo:
        one = generate_prompt_for_repo(args.thread, args.repo)
        prompts = [one] if one is not None else []
    else:
        prompts = generate_prompts(args.thread)
    if args.raw:
        for p in prompts:
            print(f"===== {p.repo} =====")
            print(p.prompt)
        return 0
    _print_json(
        {
            "ok": True,
            "result": {
                "prompts": [
                    {"repo": p.repo, "inbox_messages": len(p.inbox_messages), "prompt": p.prompt} for p in prompts
                ]
            },
        }
    )
    return 0


def _spawn_options(args: argparse.Namespace) -> SpawnOptions:
    return SpawnOptions(
        command=args.command,
        print_mode=bool(args.print_mode),
        use_stdin=bool(args.stdin),
        extra_args=list(args.arg or []),
    )


def _echo_session(event: SessionEvent) -> None:
    repo = event.session.repo
    if event.kind in ("stdout", "stderr") and event.line is not None:
        stream = sys.stdout if event.kind == "stdout" else sys.stderr
        stream.write(f"[{repo}] {event.line}\n")
        stream.flush()
    elif event.kind == "exit":
        sys.stderr.write(f"[{repo}] exited with code {event.exit_code}\n")
    elif event.kind == "error":
        sys.stderr.write(f"[{repo}] error: {event.error}\n")


def cmd_spawn(args: argparse.Namespace) -> int:
    supervisor = Supervisor()
    if not args.quiet:
        supervisor.add_listener(_echo_session)
    opts = _spawn_options(args)
    if args.repo:
        sessions = [supervisor.spawn(args.thread, args.repo, opts)]
    else:
        sessions = spawn_all_pending(supervisor, args.thread, opts)

    try:
        for s in sessions:
            s.wait()
            s.wait_output(5.0)
    except KeyboardInterrupt:
        supervisor.kill_all()
        for s in sessions:
            s.wait(5.0)
    _print_json({"ok": True, "result": {"sessions": [s.get_state().model_dump() for s in sessions]}})
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    from .daemon.run_loop import RunLoop

    supervisor = Supervisor()
    if args.spawn and not args.quiet:
        supervisor.add_listener(_echo_session)
    loop = RunLoop(
        args.thread,
        supervisor,
        spawn=bool(args.spawn),
        spawn_options=_spawn_options(args),
        tick_delay=args.tick_delay,
        max_turns=args.max_turns,
    )
    reason = loop.run(timeout=args.timeout)
    state = load_thread_state(args.thread)
    _print_json(
        {
            "ok": True,
            "result": {
                "reason": reason,
                "ticks": len(loop.results),
                "thread": state.model_dump(),
            },
        }
    )
    return 0


def cmd_close(args: argparse.Namespace) -> int:
    state = close_thread(args.thread, status=args.status, summary=args.summary)
    _print_json({"ok": True, "result": {"thread": state.model_dump()}})
    return 0


def cmd_transcript(args: argparse.Namespace) -> int:
    load_thread_state(args.thread)
    text = read_transcript(thread_paths(args.thread).transcript)
    if args.lines and args.lines > 0:
        text = "\n".join(text.splitlines()[-args.lines :]) + "\n"
    sys.stdout.write(text)
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    print(__version__)
    return 0


def _add_spawn_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--command", default="claude", help="Agent executable (default: claude)")
    p.add_argument("--print", dest="print_mode", action="store_true", help="Pass --print (non-interactive)")
    p.add_argument("--stdin", action="store_true", help="Pipe the prompt on stdin instead of -p <prompt>")
    p.add_argument("--arg", action="append", default=[], help="Extra argument for the agent (repeatable)")
    p.add_argument("--quiet", action="store_true", help="Do not echo agent output")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="council", description="Council: multi-repo agent threads over a file mailbox")
    p.add_argument(
        "--log-level",
        default=os.environ.get("COUNCIL_LOG_LEVEL", "INFO"),
        help="Log level for JSONL logs on stderr (default: $COUNCIL_LOG_LEVEL or INFO)",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Create the workspace and a default registry.yaml")
    p_init.set_defaults(func=cmd_init)

    p_thread = sub.add_parser("thread", help="Thread operations")
    thread_sub = p_thread.add_subparsers(dest="action", required=True)

    p_thread_new = thread_sub.add_parser("new", help="Start a thread between registered repos")
    p_thread_new.add_argument("--title", required=True, help="Thread title")
    p_thread_new.add_argument(
        "--repos", action="append", required=True, help="Participating repos (repeatable, comma-separated)"
    )
    p_thread_new.set_defaults(func=cmd_thread_new)

    p_thread_list = thread_sub.add_parser("list", help="List threads (newest first)")
    p_thread_list.add_argument("--status", default="", help="Only threads with this status")
    p_thread_list.set_defaults(func=cmd_thread_list)

    p_thread_show = thread_sub.add_parser("show", help="Show thread state")
    p_thread_show.add_argument("thread_id", help="Target thread id")
    p_thread_show.set_defaults(func=cmd_thread_show)

    p_ask = sub.add_parser("ask", help="Queue a human question for a repo")
    p_ask.add_argument("--thread", required=True, help="Target thread id")
    p_ask.add_argument("--to", required=True, help=f"Target repo (or {BROADCAST})")
    p_ask.add_argument("--summary", required=True, help="Message summary")
    p_ask.add_argument("--question", action="append", default=[], help="Question (repeatable)")
    p_ask.set_defaults(func=cmd_ask)

    p_interrupt = sub.add_parser("interrupt", help="Broadcast a human note to every repo")
    p_interrupt.add_argument("--thread", required=True, help="Target thread id")
    p_interrupt.add_argument("--note", required=True, help="Note text")
    p_interrupt.set_defaults(func=cmd_interrupt)

    p_ev = sub.add_parser("add-evidence", help="Copy a file into the thread's evidence/")
    p_ev.add_argument("--thread", required=True, help="Target thread id")
    p_ev.add_argument("--file", required=True, help="File to copy")
    p_ev.set_defaults(func=cmd_add_evidence)

    p_tick = sub.add_parser("tick", help="Deliver outbox messages and advance one turn")
    p_tick.add_argument("--thread", required=True, help="Target thread id")
    p_tick.add_argument("--max-turns", type=int, default=None, help="Override registry max_turns")
    p_tick.set_defaults(func=cmd_tick)

    p_prompts = sub.add_parser("prompts", help="Render prompts for pending repos")
    p_prompts.add_argument("--thread", required=True, help="Target thread id")
    p_prompts.add_argument("--repo", default="", help="Only this repo")
    p_prompts.add_argument("--raw", action="store_true", help="Print prompt text instead of JSON")
    p_prompts.set_defaults(func=cmd_prompts)

    p_spawn = sub.add_parser("spawn", help="Run agents for pending repos and wait for them")
    p_spawn.add_argument("--thread", required=True, help="Target thread id")
    p_spawn.add_argument("--repo", default="", help="Only this repo (default: every pending repo)")
    _add_spawn_args(p_spawn)
    p_spawn.set_defaults(func=cmd_spawn)

    p_run = sub.add_parser("run", help="Watch the outbox and tick until resolved, blocked or timed out")
    p_run.add_argument("--thread", required=True, help="Target thread id")
    p_run.add_argument("--spawn", action="store_true", help="Spawn agents for pending repos after each tick")
    p_run.add_argument("--tick-delay", type=float, default=0.5, help="Seconds to wait before ticking (default: 0.5)")
    p_run.add_argument("--max-turns", type=int, default=None, help="Override registry max_turns")
    p_run.add_argument("--timeout", type=float, default=None, help="Stop after this many seconds")
    _add_spawn_args(p_run)
    p_run.set_defaults(func=cmd_run)

    p_close = sub.add_parser("close", help="Close a thread")
    p_close.add_argument("--thread", required=True, help="Target thread id")
    p_close.add_argument("--status", choices=list(CLOSED_STATUSES), default="resolved", help="Final status")
    p_close.add_argument("--summary", default="", help="Resolution summary (written to resolution.md)")
    p_close.set_defaults(func=cmd_close)

    p_tr = sub.add_parser("transcript", help="Print the thread transcript")
    p_tr.add_argument("--thread", required=True, help="Target thread id")
    p_tr.add_argument("-n", "--lines", type=int, default=0, help="Only the last N lines")
    p_tr.set_defaults(func=cmd_transcript)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_root_json_logging(component="cli", level=args.log_level)
    try:
        return int(args.func(args))
    except CouncilError as e:
        _print_json({"ok": False, "error": {"code": e.code, "message": e.message}})
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
