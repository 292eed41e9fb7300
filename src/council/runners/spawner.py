"""Agent process supervisor.

One external agent process per (thread_id, repo). The prompt owed to the repo
is saved under prompts/ and handed to the process as an argument or on stdin;
stdout/stderr lines, exit and error are published to listeners registered on
the Supervisor instance.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Tuple

from ..contracts.v1 import SessionEventKind, SessionState, SessionStatus
from ..errors import CouncilError, RepoNotPendingError, SessionError, SessionNotFoundError, SessionTimeoutError, SpawnError
from ..kernel.prompts import GeneratedPrompt, generate_prompt_for_repo
from ..kernel.registry import Registry, get_repo_config, load_registry, resolve_repo_path
from ..kernel.thread import load_thread_state, thread_paths
from ..util.fs import atomic_write_text
from ..util.time import utc_now_iso

logger = logging.getLogger("council.spawner")

ENV_THREAD_ID = "COUNCIL_THREAD_ID"
ENV_REPO = "COUNCIL_REPO"
ENV_OUTBOX = "COUNCIL_OUTBOX"

_FORCE_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)

PromptSource = Callable[..., Optional[GeneratedPrompt]]


@dataclass
class SpawnOptions:
    command: str = "claude"
    print_mode: bool = False  # pass --print (non-interactive)
    use_stdin: bool = False  # pipe the prompt instead of `-p <prompt>`
    extra_args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def argv(self, prompt: str) -> List[str]:
        args = [self.command]
        if self.print_mode:
            args.append("--print")
        args.extend(str(a) for a in self.extra_args)
        if not self.use_stdin:
            args += ["-p", prompt]
        return args


class SpawnedSession:
    """One agent process. Terminal status (exited/error) is set exactly once."""

    def __init__(
        self,
        *,
        thread_id: str,
        repo: str,
        cwd: Path,
        process: Optional[subprocess.Popen] = None,
    ) -> None:
        self.thread_id = thread_id
        self.repo = repo
        self.cwd = cwd
        self.process = process
        self.pid = int(getattr(process, "pid", 0) or 0)
        self.started_at = utc_now_iso()

        self._lock = threading.Lock()
        self._status: SessionStatus = "running"
        self._exit_code: Optional[int] = None
        self._error: Optional[BaseException] = None
        self._done = threading.Event()
        self._drained = threading.Event()

    @property
    def key(self) -> Tuple[str, str]:
        return (self.thread_id, self.repo)

    @property
    def status(self) -> SessionStatus:
        with self._lock:
            return self._status

    @property
    def exit_code(self) -> Optional[int]:
        with self._lock:
            return self._exit_code

    @property
    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._error

    def is_running(self) -> bool:
        return self.status == "running"

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session is terminal. False on timeout."""
        return self._done.wait(timeout)

    def wait_output(self, timeout: Optional[float] = None) -> bool:
        """Block until output is drained and the exit/error event was published."""
        return self._drained.wait(timeout)

    def get_state(self) -> SessionState:
        with self._lock:
            return SessionState(
                thread_id=self.thread_id,
                repo=self.repo,
                pid=self.pid,
                cwd=str(self.cwd),
                started_at=self.started_at,
                status=self._status,
                exit_code=self._exit_code,
                error=str(self._error) if self._error is not None else None,
            )

    def _finish(
        self,
        status: SessionStatus,
        *,
        exit_code: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        with self._lock:
            if self._status != "running":
                return False
            self._status = status
            self._exit_code = exit_code
            self._error = error
        self._done.set()
        return True

    def send_signal(self, sig: int) -> bool:
        with self._lock:
            proc = self.process
            if self._status != "running" or proc is None or proc.poll() is not None:
                return False
            if os.name != "nt":
                try:
                    # The agent runs in its own session; signal its whole group.
                    os.killpg(proc.pid, sig)
                    return True
                except ProcessLookupError:
                    return False
                except PermissionError:
                    pass
            try:
                proc.send_signal(sig)
            except OSError:
                return False
            return True


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    session: SpawnedSession
    line: str = ""
    exit_code: Optional[int] = None
    error: Optional[BaseException] = None


SessionListener = Callable[[SessionEvent], None]


class Supervisor:
    """Registry of agent sessions keyed by (thread_id, repo)."""

    def __init__(
        self,
        *,
        home: Optional[Path] = None,
        registry: Optional[Registry] = None,
        prompt_source: Optional[PromptSource] = None,
    ) -> None:
        self._home = home
        self._registry = registry
        self._prompt_source: PromptSource = prompt_source or generate_prompt_for_repo
        self._lock = threading.Lock()
        self._sessions: Dict[Tuple[str, str], SpawnedSession] = {}
        self._listeners: List[SessionListener] = []

    # -- listeners ---------------------------------------------------------

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def _emit(self, event: SessionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(event)
            except Exception:
                logger.exception(
                    "session listener failed on %s",
                    event.kind,
                    extra={"thread_id": event.session.thread_id, "repo": event.session.repo},
                )

    # -- spawning ----------------------------------------------------------

    def spawn(self, thread_id: str, repo: str, options: Optional[SpawnOptions] = None) -> SpawnedSession:
        opts = options or SpawnOptions()
        key = (thread_id, repo)
        existing = self.get_session(thread_id, repo)
        if existing is not None and existing.is_running():
            logger.info("session already running (pid %d)", existing.pid, extra={"thread_id": thread_id, "repo": repo})
            return existing

        reg = self._registry or load_registry(self._home)
        cfg = get_repo_config(reg, repo)
        state = load_thread_state(thread_id, self._home)
        if repo not in state.pending_for:
            raise RepoNotPendingError(
                f'Repo "{repo}" is not pending in thread {thread_id}',
                details={"thread_id": thread_id, "repo": repo, "pending_for": list(state.pending_for)},
            )
        prompt = self._prompt_source(thread_id, repo, home=self._home, registry=reg)
        if prompt is None:
            raise RepoNotPendingError(
                f'No pending messages for repo "{repo}" in thread {thread_id}',
                details={"thread_id": thread_id, "repo": repo},
            )

        cwd = resolve_repo_path(cfg, self._home)
        paths = thread_paths(thread_id, self._home)
        atomic_write_text(paths.prompts / f"{repo}_prompt.md", prompt.prompt)

        env = os.environ.copy()
        env.update({k: v for k, v in opts.env.items() if isinstance(k, str) and isinstance(v, str)})
        env[ENV_THREAD_ID] = thread_id
        env[ENV_REPO] = repo
        env[ENV_OUTBOX] = str(paths.outbox.resolve())

        failed: Optional[SpawnedSession] = None
        spawn_error: Optional[OSError] = None
        with self._lock:
            # Re-check under the lock: a concurrent spawn may have won.
            existing = self._sessions.get(key)
            if existing is not None and existing.is_running():
                return existing
            try:
                proc = subprocess.Popen(
                    opts.argv(prompt.prompt),
                    cwd=str(cwd),
                    env=env,
                    stdin=subprocess.PIPE if opts.use_stdin else subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=(os.name != "nt"),
                )
            except OSError as e:
                spawn_error = e
                failed = SpawnedSession(thread_id=thread_id, repo=repo, cwd=cwd)
                failed._finish("error", error=e)
                self._sessions[key] = failed
            else:
                session = SpawnedSession(thread_id=thread_id, repo=repo, cwd=cwd, process=proc)
                self._sessions[key] = session

        if failed is not None and spawn_error is not None:
            logger.warning(
                "failed to spawn %s: %s", opts.command, spawn_error, extra={"thread_id": thread_id, "repo": repo}
            )
            self._emit(SessionEvent(kind="error", session=failed, error=spawn_error))
            failed._drained.set()
            raise SpawnError(
                f'Failed to spawn agent for repo "{repo}": {spawn_error}',
                details={"thread_id": thread_id, "repo": repo, "command": opts.command},
            ) from spawn_error

        self._start_io(session, prompt.prompt if opts.use_stdin else None)
        logger.info(
            "spawned %s", opts.command, extra={"thread_id": thread_id, "repo": repo, "pid": session.pid, "op": "spawn"}
        )
        return session

    def _start_io(self, session: SpawnedSession, stdin_text: Optional[str]) -> None:
        proc = session.process
        assert proc is not None
        name = f"council-{session.thread_id}:{session.repo}"

        readers = [
            threading.Thread(target=self._pump, args=(session, proc.stdout, "stdout"), name=f"{name}:out", daemon=True),
            threading.Thread(target=self._pump, args=(session, proc.stderr, "stderr"), name=f"{name}:err", daemon=True),
        ]
        for t in readers:
            t.start()
        if stdin_text is not None:
            threading.Thread(target=self._feed, args=(session, stdin_text), name=f"{name}:in", daemon=True).start()
        threading.Thread(target=self._reap, args=(session, readers), name=f"{name}:wait", daemon=True).start()

    def _pump(self, session: SpawnedSession, stream: Optional[IO[str]], kind: SessionEventKind) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                self._emit(SessionEvent(kind=kind, session=session, line=line.rstrip("\r\n")))
        except (OSError, ValueError):
            pass
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _feed(self, session: SpawnedSession, text: str) -> None:
        proc = session.process
        if proc is None or proc.stdin is None:
            return
        try:
            proc.stdin.write(text)
            proc.stdin.close()
        except (BrokenPipeError, OSError, ValueError) as e:
            logger.debug("stdin closed early: %s", e, extra={"thread_id": session.thread_id, "repo": session.repo})

    def _reap(self, session: SpawnedSession, readers: List[threading.Thread]) -> None:
        proc = session.process
        assert proc is not None
        try:
            try:
                code = proc.wait()
            except Exception as e:  # never leave a session without a terminal state
                if session._finish("error", error=e):
                    logger.warning(
                        "session wait failed: %s", e, extra={"thread_id": session.thread_id, "repo": session.repo}
                    )
                    self._emit(SessionEvent(kind="error", session=session, error=e))
                return
            # Terminal as soon as the process is gone; a grandchild may still hold the pipes.
            if not session._finish("exited", exit_code=code):
                return
            logger.info(
                "session exited with code %s",
                code,
                extra={"thread_id": session.thread_id, "repo": session.repo, "pid": session.pid},
            )
            # Deliver remaining output lines before the exit event.
            for t in readers:
                t.join(timeout=5.0)
            self._emit(SessionEvent(kind="exit", session=session, exit_code=code))
        finally:
            session._drained.set()

    # -- lookups -----------------------------------------------------------

    def get_session(self, thread_id: str, repo: str) -> Optional[SpawnedSession]:
        with self._lock:
            return self._sessions.get((thread_id, repo))

    def get_active_sessions(self) -> List[SpawnedSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s for s in sessions if s.is_running()]

    def get_thread_sessions(self, thread_id: str) -> List[SpawnedSession]:
        with self._lock:
            return [s for (tid, _), s in self._sessions.items() if tid == thread_id]

    def sessions_state(self, thread_id: str) -> List[SessionState]:
        return [s.get_state() for s in self.get_thread_sessions(thread_id)]

    # -- termination -------------------------------------------------------

    def kill(self, thread_id: str, repo: str, sig: int = signal.SIGTERM) -> bool:
        session = self.get_session(thread_id, repo)
        if session is None:
            return False
        return session.send_signal(sig)

    def kill_thread(self, thread_id: str, sig: int = signal.SIGTERM) -> int:
        return sum(1 for s in self.get_thread_sessions(thread_id) if s.send_signal(sig))

    def kill_all(self, sig: int = signal.SIGTERM) -> int:
        return sum(1 for s in self.get_active_sessions() if s.send_signal(sig))

    def wait_for_session(self, thread_id: str, repo: str, timeout: Optional[float] = None) -> Optional[int]:
        """Return the exit code; on timeout the process is force-killed."""
        session = self.get_session(thread_id, repo)
        if session is None:
            raise SessionNotFoundError(
                f"No session found for {thread_id}:{repo}", details={"thread_id": thread_id, "repo": repo}
            )
        if not session.wait(timeout):
            session.send_signal(_FORCE_SIGNAL)
            raise SessionTimeoutError(
                f"Session timeout after {timeout}s", details={"thread_id": thread_id, "repo": repo}
            )
        if session.status == "error":
            raise SessionError(
                f"Session {thread_id}:{repo} failed: {session.error}", details={"thread_id": thread_id, "repo": repo}
            )
        return session.exit_code


def spawn_all_pending(
    supervisor: Supervisor,
    thread_id: str,
    options: Optional[SpawnOptions] = None,
    *,
    home: Optional[Path] = None,
) -> List[SpawnedSession]:
    """Spawn a session for every pending repo; one repo's failure does not stop the others."""
    state = load_thread_state(thread_id, home)
    sessions: List[SpawnedSession] = []
    for repo in state.pending_for:
        try:
            sessions.append(supervisor.spawn(thread_id, repo, options))
        except CouncilError as e:
            logger.warning("spawn skipped: %s", e.message, extra={"thread_id": thread_id, "repo": repo})
    return sessions
