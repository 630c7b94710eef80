from __future__ import annotations

import time
from threading import Event, Thread
from typing import Protocol

from .db import StoreError, Watch
from .events import BindingEvent, UpdateEvent, event_key
from .models import ResourceBinding
from .predicates import Funcs
from .workqueue import RateLimitingQueue


class WatchSource(Protocol):
    def watch(self) -> Watch: ...

    def list_bindings(self, namespace: str | None = None) -> list[ResourceBinding]: ...

    def log_event(self, level: str, message: str, binding: str | None = None, reason: str | None = None) -> None: ...


class Informer:
    """Feeds admitted binding events into the work queue.

    Besides live watch events, every ``resync_period_s`` each stored binding is
    replayed as an update with old == new, so work dropped on shutdown or
    restart is delivered again.
    """

    def __init__(
        self,
        source: WatchSource,
        queue: RateLimitingQueue,
        predicate: Funcs,
        resync_period_s: float = 300.0,
        poll_s: float = 0.5,
    ):
        self.source = source
        self.queue = queue
        self.predicate = predicate
        self.resync_period_s = max(0.0, float(resync_period_s))
        self.poll_s = max(0.01, float(poll_s))
        self._stop = Event()
        self._watch: Watch | None = None
        self._thr: Thread | None = None

    def handle(self, event: BindingEvent) -> bool:
        if not self.predicate.admits(event):
            return False
        self.queue.add(event_key(event))
        return True

    def resync(self) -> int:
        admitted = 0
        for b in self.source.list_bindings():
            if self.handle(UpdateEvent(b, b)):
                admitted += 1
        return admitted

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="gec-informer", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        if self._watch is not None:
            self._watch.stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def _log_failure(self, e: StoreError) -> None:
        try:
            self.source.log_event("ERROR", f"Informer resync failed: {type(e).__name__}: {e}")
        except StoreError:
            # Store is down; the next resync attempt will log again.
            pass

    def _loop(self) -> None:
        last_resync = 0.0
        while not self._stop.is_set():
            if self._watch is None or self._watch.stopped:
                # Open the watch before listing so nothing written in between is lost.
                self._watch = self.source.watch()
                last_resync = 0.0
            now = time.monotonic()
            if not last_resync or (self.resync_period_s and now - last_resync >= self.resync_period_s):
                try:
                    self.resync()
                    last_resync = now
                except StoreError as e:
                    self._log_failure(e)
                    self._stop.wait(self.poll_s)
                    continue
            event = self._watch.get(timeout=self.poll_s)
            if event is not None:
                self.handle(event)
        if self._watch is not None:
            self._watch.stop()
