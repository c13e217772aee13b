# vfswatch.py - file change feed for VFShare
#
# ChangeFeed is the message source that the share registry and favorites
# subscribe to. Events are queued by whoever observes the filesystem and each
# subscriber consumes them on its own worker thread, in order. A failing handler
# is logged and a slow one only delays its own events.
#
# PathPoller is the built-in producer: it watches only the paths someone cares
# about (shared and favorited directories) and reports the ones that vanished.

from __future__ import annotations
import logging
import os
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set

from vfsutils import PATH_POLL_INTERVAL

log = logging.getLogger("vfshare.watch")

EVENT_TYPES = ("create", "delete", "rename")


@dataclass(frozen=True)
class FileChangeEvent:
    type: str
    path: str                      # real path; the old path for renames
    new_path: Optional[str] = None

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {self.type}")

    @property
    def removes_path(self) -> bool:
        """Deletes and renames both make `path` disappear."""
        return self.type in ("delete", "rename")


Handler = Callable[[FileChangeEvent], None]

_STOP = object()


def _call(handler: Handler, event: FileChangeEvent) -> None:
    try:
        handler(event)
    except Exception:
        log.exception("[watch] handler %r failed for %s %s", handler, event.type, event.path)


class _Subscription:
    """One handler with its own queue and worker, so a slow handler only delays itself."""

    def __init__(self, handler: Handler):
        self.handler = handler
        self.queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name="vfshare-feed", daemon=True)
        self._thread.start()

    def stop(self, timeout: float) -> None:
        if not self._thread:
            return
        self.queue.put(_STOP)
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None

    def _loop(self) -> None:
        while True:
            event = self.queue.get()
            try:
                if event is _STOP:
                    return
                _call(self.handler, event)
            finally:
                self.queue.task_done()


class ChangeFeed:
    def __init__(self, stop_timeout: float = 5.0):
        self._subscriptions: List[_Subscription] = []
        self._lock = threading.Lock()
        self._running = False
        self.stop_timeout = stop_timeout

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unregisters it."""
        sub = _Subscription(handler)
        with self._lock:
            self._subscriptions.append(sub)
            if self._running:
                sub.start()

        def _unsubscribe() -> None:
            with self._lock:
                if sub not in self._subscriptions:
                    return
                self._subscriptions.remove(sub)
            sub.stop(self.stop_timeout)
        return _unsubscribe

    def publish(self, event: FileChangeEvent) -> None:
        with self._lock:
            for sub in self._subscriptions:
                sub.queue.put(event)

    def start(self) -> None:
        with self._lock:
            self._running = True
            for sub in self._subscriptions:
                sub.start()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            subs = list(self._subscriptions)
        for sub in subs:
            sub.stop(self.stop_timeout)

    def drain(self) -> None:
        """Block until every queued event has been handled."""
        with self._lock:
            subs = list(self._subscriptions)
        for sub in subs:
            sub.queue.join()

    def deliver(self, event: FileChangeEvent) -> None:
        """Hand one event to every handler on the calling thread."""
        with self._lock:
            handlers = [sub.handler for sub in self._subscriptions]
        for handler in handlers:
            _call(handler, event)


class PathPoller:
    """
    Polls a changing set of real paths and publishes a delete event for each
    one that existed on the previous pass and is gone now.
    """

    def __init__(self, feed: ChangeFeed, paths: Callable[[], Iterable[str]],
                 interval: float = PATH_POLL_INTERVAL):
        self.feed = feed
        self.paths = paths
        self.interval = interval
        self._seen: Set[str] = set()
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> List[str]:
        current = set(self.paths())
        existing = {p for p in current if os.path.lexists(p)}
        vanished = sorted(p for p in self._seen if p in current and p not in existing)
        for path in vanished:
            log.info("[watch] %s disappeared", path)
            self.feed.publish(FileChangeEvent("delete", path))
        self._seen = existing
        return vanished

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._loop, name="vfshare-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_evt.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_evt.is_set():
            try:
                self.poll_once()
            except Exception:
                log.exception("[watch] poll failed")
            self._stop_evt.wait(self.interval)
