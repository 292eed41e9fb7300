"""Thread mailbox watcher.

Turns filesystem notifications for a thread's outbox/ (optionally inbox/)
into debounced OutboxEvents. Agents write message files incrementally, so a
path only fires once it has been quiet for `debounce` seconds.
"""
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..contracts.v1 import FileEventType, OutboxEvent
from ..kernel.mailbox import MailboxEntry, parse_message_file
from ..kernel.thread import thread_paths

logger = logging.getLogger("council.watcher")

DEFAULT_DEBOUNCE_SECONDS = 0.05

WatchListener = Callable[[OutboxEvent], None]


def _norm(p: object) -> str:
    return os.path.normpath(os.fsdecode(p))  # type: ignore[arg-type]


class _MailboxHandler(FileSystemEventHandler):
    def __init__(self, watcher: "ThreadWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._on_fs_event("add", event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._on_fs_event("change", event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writers rename a temp file into place; the destination is new.
        dest = getattr(event, "dest_path", "")
        if not event.is_directory and dest:
            self._watcher._on_fs_event("add", dest)


class ThreadWatcher:
    def __init__(
        self,
        thread_id: str,
        *,
        home: Optional[Path] = None,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        watch_inbox: bool = False,
    ) -> None:
        self.thread_id = thread_id
        self.debounce = max(0.0, float(debounce))
        self.watch_inbox = bool(watch_inbox)
        paths = thread_paths(thread_id, home)
        self._dirs: List[Path] = [paths.outbox] + ([paths.inbox] if self.watch_inbox else [])
        self._dir_keys = {_norm(d) for d in self._dirs}

        self._lock = threading.Lock()
        # Held while an event is being delivered; stop() waits on it.
        self._emit_lock = threading.RLock()
        self._observer: Optional[Observer] = None
        self._timers: Dict[str, Tuple[threading.Timer, FileEventType]] = {}
        self._listeners: List[WatchListener] = []

    def add_listener(self, listener: WatchListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def is_active(self) -> bool:
        with self._lock:
            return self._observer is not None

    def start(self) -> None:
        with self._lock:
            if self._observer is not None:
                return
            observer = Observer()
            handler = _MailboxHandler(self)
            for d in self._dirs:
                d.mkdir(parents=True, exist_ok=True)
                observer.schedule(handler, str(d), recursive=False)
            observer.daemon = True
            observer.start()
            self._observer = observer
        logger.debug("watching %s", ", ".join(str(d) for d in self._dirs), extra={"thread_id": self.thread_id})

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel pending timers, then release the subscription. No events fire after this returns."""
        with self._lock:
            observer = self._observer
            self._observer = None
            timers = list(self._timers.values())
            self._timers.clear()
        for timer, _ in timers:
            timer.cancel()
        with self._emit_lock:
            pass
        if observer is not None:
            observer.stop()
            if observer is not threading.current_thread():
                observer.join(timeout)
            logger.debug("stopped", extra={"thread_id": self.thread_id})

    def pending_paths(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)

    def _on_fs_event(self, kind: FileEventType, raw_path: object) -> None:
        path = _norm(raw_path)
        if not path.endswith(".json"):
            return
        if os.path.dirname(path) not in self._dir_keys:
            return
        with self._lock:
            if self._observer is None:
                return
            prev = self._timers.pop(path, None)
            if prev is not None:
                prev[0].cancel()
                if prev[1] == "add":
                    kind = "add"
            timer = threading.Timer(self.debounce, self._fire, args=(path, kind))
            timer.daemon = True
            self._timers[path] = (timer, kind)
            timer.start()

    def _fire(self, path: str, kind: FileEventType) -> None:
        with self._emit_lock:
            me = threading.current_thread()
            with self._lock:
                cur = self._timers.get(path)
                if self._observer is None or cur is None or cur[0] is not me:
                    return
                del self._timers[path]
                listeners = list(self._listeners)

            p = Path(path)
            parsed = parse_message_file(p)
            event = OutboxEvent(
                type=kind,
                side="inbox" if p.parent.name == "inbox" else "outbox",
                path=path,
                filename=p.name,
                message=parsed.message if isinstance(parsed, MailboxEntry) else None,
                thread_id=self.thread_id,
            )
            for fn in listeners:
                try:
                    fn(event)
                except Exception:
                    logger.exception("watch listener failed", extra={"thread_id": self.thread_id, "path": path})


class MultiThreadWatcher:
    """One watcher per thread, with events fanned into a single listener set."""

    def __init__(
        self,
        *,
        home: Optional[Path] = None,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        watch_inbox: bool = False,
    ) -> None:
        self._home = home
        self._debounce = debounce
        self._watch_inbox = watch_inbox
        self._lock = threading.Lock()
        self._watchers: Dict[str, ThreadWatcher] = {}
        self._listeners: List[WatchListener] = []

    def add_listener(self, listener: WatchListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def _forward(self, event: OutboxEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(event)
            except Exception:
                logger.exception("watch listener failed", extra={"thread_id": event.thread_id})

    def watch(self, thread_id: str, *, watch_inbox: Optional[bool] = None) -> ThreadWatcher:
        with self._lock:
            existing = self._watchers.get(thread_id)
            if existing is not None:
                return existing
            watcher = ThreadWatcher(
                thread_id,
                home=self._home,
                debounce=self._debounce,
                watch_inbox=self._watch_inbox if watch_inbox is None else watch_inbox,
            )
            watcher.add_listener(self._forward)
            watcher.start()
            self._watchers[thread_id] = watcher
            return watcher

    def unwatch(self, thread_id: str) -> bool:
        with self._lock:
            watcher = self._watchers.pop(thread_id, None)
        if watcher is None:
            return False
        watcher.stop()
        return True

    def stop_all(self) -> None:
        with self._lock:
            watchers = list(self._watchers.values())
            self._watchers.clear()
        if not watchers:
            return
        with ThreadPoolExecutor(max_workers=min(8, len(watchers)), thread_name_prefix="council-unwatch") as pool:
            for f in [pool.submit(w.stop) for w in watchers]:
                f.result()

    def watched_threads(self) -> List[str]:
        with self._lock:
            return list(self._watchers)
