from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from ..contracts.v1 import OutboxEvent
from ..errors import CouncilError, ThreadNotActiveError
from ..kernel.mailbox import read_entries
from ..kernel.thread import close_thread, load_thread_state, thread_paths
from ..kernel.tick import TickResult, run_tick
from ..runners.spawner import SpawnOptions, Supervisor
from .watcher import DEFAULT_DEBOUNCE_SECONDS, ThreadWatcher

logger = logging.getLogger("council.run_loop")


class RunLoop:
    """Watch a thread's outbox and tick it whenever agents respond.

    Ticks are single flight: events arriving during the delay coalesce into one
    tick, and events arriving while a tick runs schedule exactly one follow-up.
    With `spawn` enabled, repos that become pending get an agent session.
    """

    def __init__(
        self,
        thread_id: str,
        supervisor: Optional[Supervisor] = None,
        *,
        home: Optional[Path] = None,
        spawn: bool = False,
        spawn_options: Optional[SpawnOptions] = None,
        tick_delay: float = 0.5,
        max_turns: Optional[int] = None,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.thread_id = thread_id
        self.home = home
        self.spawn = bool(spawn)
        self.spawn_options = spawn_options
        self.tick_delay = max(0.0, float(tick_delay))
        self.max_turns = max_turns
        self.supervisor = supervisor if supervisor is not None else Supervisor(home=home)
        self.watcher = ThreadWatcher(thread_id, home=home, debounce=debounce)

        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._ticking = False
        self._rerun = False
        self._started = False
        self._stopped = False
        self._done = threading.Event()
        self.stop_reason: Optional[str] = None
        self.results: List[TickResult] = []

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
        state = load_thread_state(self.thread_id, self.home)
        if not state.is_active:
            raise ThreadNotActiveError(
                f"Thread is {state.status}. Cannot run.",
                details={"thread_id": self.thread_id, "status": state.status},
            )
        self.watcher.add_listener(self._on_event)
        self.watcher.start()
        logger.info("run loop started", extra={"thread_id": self.thread_id, "turn": state.turn})

        if self.spawn and state.pending_for:
            self._spawn_repos(state.pending_for)
        # Files written before the watcher started produce no events.
        if read_entries(thread_paths(self.thread_id, self.home).outbox):
            self.schedule_tick()

    def _on_event(self, event: OutboxEvent) -> None:
        if event.side == "outbox":
            self.schedule_tick()

    def schedule_tick(self) -> None:
        with self._lock:
            if self._stopped:
                return
            if self._ticking:
                self._rerun = True
                return
            if self._timer is not None:
                return
            timer = threading.Timer(self.tick_delay, self._tick_now)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _tick_now(self) -> None:
        with self._lock:
            self._timer = None
            if self._stopped:
                return
            self._ticking = True

        result: Optional[TickResult] = None
        try:
            result = run_tick(self.thread_id, home=self.home, max_turns=self.max_turns)
        except ThreadNotActiveError:
            logger.info("thread no longer active", extra={"thread_id": self.thread_id})
            self.stop("closed")
        except CouncilError as e:
            logger.error("tick failed: %s", e.message, extra={"thread_id": self.thread_id, "op": "tick"})
        except OSError:
            logger.exception("tick failed", extra={"thread_id": self.thread_id, "op": "tick"})
        finally:
            with self._lock:
                self._ticking = False
                rerun = self._rerun
                self._rerun = False

        if result is not None:
            self.results.append(result)
            self._after_tick(result)
        if rerun:
            self.schedule_tick()

    def _after_tick(self, result: TickResult) -> None:
        if result.status == "resolved":
            self.stop("resolved")
            return
        if result.status == "max_turns":
            try:
                close_thread(
                    self.thread_id,
                    status="blocked",
                    summary=f"Stopped after reaching max turns ({result.turn}).",
                    home=self.home,
                )
            except CouncilError as e:
                logger.warning("close failed: %s", e.message, extra={"thread_id": self.thread_id})
            self.stop("max_turns")
            return
        if self.spawn and result.new_pending_repos:
            self._spawn_repos(result.new_pending_repos)

    def _spawn_repos(self, repos: Iterable[str]) -> None:
        for repo in repos:
            with self._lock:
                if self._stopped:
                    return
            session = self.supervisor.get_session(self.thread_id, repo)
            if session is not None and session.is_running():
                continue
            try:
                self.supervisor.spawn(self.thread_id, repo, self.spawn_options)
            except CouncilError as e:
                logger.warning("spawn skipped: %s", e.message, extra={"thread_id": self.thread_id, "repo": repo})

    def stop(self, reason: str = "stopped") -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self.stop_reason = reason
            timer = self._timer
            self._timer = None
        if timer is not None:
            timer.cancel()
        self.watcher.stop()
        killed = self.supervisor.kill_thread(self.thread_id)
        logger.info("run loop stopped (%s), %d session(s) killed", reason, killed, extra={"thread_id": self.thread_id})
        self._done.set()

    def is_running(self) -> bool:
        with self._lock:
            return self._started and not self._stopped

    def wait(self, timeout: Optional[float] = None) -> str:
        """Block until the loop stops. On timeout the loop is stopped with reason "timeout"."""
        if not self._done.wait(timeout):
            self.stop("timeout")
        return self.stop_reason or "stopped"

    def run(self, timeout: Optional[float] = None) -> str:
        self.start()
        try:
            return self.wait(timeout)
        except KeyboardInterrupt:
            self.stop("interrupted")
            return "interrupted"
