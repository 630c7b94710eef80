from __future__ import annotations

import json
import os
import queue
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from threading import Lock
from typing import Any, Iterator, Sequence

from .events import BindingEvent, CreateEvent, DeleteEvent, UpdateEvent
from .models import (
    CONDITION_SCHEDULED,
    AggregatedStatusItem,
    BindingSpec,
    BindingStatus,
    Condition,
    EvictionTask,
    ResourceBinding,
    set_condition,
)
from .runtime import Clock, SystemClock, format_time, parse_time


class StoreError(Exception):
    pass


class NotFound(StoreError):
    pass


class Conflict(StoreError):
    """The conditional write was based on a stale resource_version."""


class TransientStoreError(StoreError):
    """The store could not be reached or was busy; retry later."""


def _resolve_db_path(db_path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is an existing directory (docker creates one for a
    missing bind-mounted file), the DB file is placed inside it.
    """
    p = os.path.abspath(db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "gec.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


class Watch:
    """A restartable stream of binding events. Stop it to unsubscribe."""

    _STOP = object()

    def __init__(self, store: "BindingStore") -> None:
        self._store = store
        self._q: queue.Queue[Any] = queue.Queue()
        self.stopped = False

    def _push(self, event: BindingEvent) -> None:
        self._q.put(event)

    def get(self, timeout: float | None = None) -> BindingEvent | None:
        """Next event, or None on timeout or after stop()."""
        if self.stopped:
            return None
        try:
            item = self._q.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._STOP:
            return None
        return item

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self._store._unsubscribe(self)
        self._q.put(self._STOP)


class BindingStore:
    """sqlite-backed binding store with version-checked writes and a watch feed."""

    def __init__(self, db_path: str, timeout_s: float = 10.0, clock: Clock | None = None):
        self.path = _resolve_db_path(db_path)
        self.timeout_s = max(0.1, float(timeout_s))
        self.clock = clock or SystemClock()
        self._watch_lock = Lock()
        self._watches: list[Watch] = []

    # -- plumbing -----------------------------------------------------------

    @contextmanager
    def _session(self, write: bool = False, timeout_s: float | None = None) -> Iterator[sqlite3.Connection]:
        """One connection; timeout_s overrides the busy timeout for this call only."""
        busy = self.timeout_s if timeout_s is None else max(0.001, min(self.timeout_s, float(timeout_s)))
        try:
            conn = sqlite3.connect(self.path, timeout=busy, isolation_level=None, check_same_thread=False)
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"cannot open store: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            if write:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            if write:
                conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise TransientStoreError(f"store unavailable: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self._session() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS bindings (
                  namespace TEXT NOT NULL,
                  name TEXT NOT NULL,
                  generation INTEGER NOT NULL,
                  resource_version INTEGER NOT NULL,
                  deletion_timestamp TEXT,
                  clusters TEXT NOT NULL,        -- json list
                  eviction_tasks TEXT NOT NULL,  -- json list, the only field the controller writes
                  status TEXT NOT NULL,          -- json object
                  created_at TEXT NOT NULL,
                  PRIMARY KEY(namespace, name)
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  binding TEXT,
                  reason TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    def _subscribe(self, w: Watch) -> None:
        with self._watch_lock:
            self._watches.append(w)

    def _unsubscribe(self, w: Watch) -> None:
        with self._watch_lock:
            if w in self._watches:
                self._watches.remove(w)

    def _broadcast(self, event: BindingEvent) -> None:
        with self._watch_lock:
            watches = list(self._watches)
        for w in watches:
            w._push(event)

    def watch(self) -> Watch:
        w = Watch(self)
        self._subscribe(w)
        return w

    # -- events log ---------------------------------------------------------

    def log_event(self, level: str, message: str, binding: str | None = None, reason: str | None = None) -> None:
        with self._session(write=True) as conn:
            conn.execute(
                "INSERT INTO events (ts, level, binding, reason, message) VALUES (?, ?, ?, ?, ?)",
                (format_time(self.clock.now()), level.upper(), binding, reason, message),
            )

    def latest_events(self, limit: int = 100, binding: str | None = None) -> list[dict[str, Any]]:
        with self._session() as conn:
            if binding:
                rows = conn.execute(
                    "SELECT * FROM events WHERE binding=? ORDER BY id DESC LIMIT ?", (binding, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    # -- reads --------------------------------------------------------------

    @staticmethod
    def _row_to_binding(row: sqlite3.Row) -> ResourceBinding:
        status = json.loads(row["status"])
        deletion = row["deletion_timestamp"]
        return ResourceBinding(
            namespace=row["namespace"],
            name=row["name"],
            generation=row["generation"],
            resource_version=row["resource_version"],
            deletion_timestamp=parse_time(deletion) if deletion else None,
            spec=BindingSpec(
                clusters=tuple(json.loads(row["clusters"])),
                eviction_tasks=tuple(EvictionTask.from_dict(t) for t in json.loads(row["eviction_tasks"])),
            ),
            status=BindingStatus(
                scheduler_observed_generation=int(status.get("scheduler_observed_generation", 0)),
                aggregated_status=tuple(AggregatedStatusItem.from_dict(s) for s in status.get("aggregated_status", [])),
                conditions=tuple(Condition.from_dict(c) for c in status.get("conditions", [])),
            ),
        )

    @staticmethod
    def _fetch(conn: sqlite3.Connection, namespace: str, name: str) -> ResourceBinding:
        row = conn.execute("SELECT * FROM bindings WHERE namespace=? AND name=?", (namespace, name)).fetchone()
        if row is None:
            raise NotFound(f"binding {namespace}/{name} not found")
        return BindingStore._row_to_binding(row)

    def get(self, namespace: str, name: str, timeout_s: float | None = None) -> ResourceBinding:
        with self._session(timeout_s=timeout_s) as conn:
            return self._fetch(conn, namespace, name)

    def list_bindings(self, namespace: str | None = None) -> list[ResourceBinding]:
        with self._session() as conn:
            if namespace:
                rows = conn.execute(
                    "SELECT * FROM bindings WHERE namespace=? ORDER BY namespace, name", (namespace,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM bindings ORDER BY namespace, name").fetchall()
            return [self._row_to_binding(r) for r in rows]

    # -- writes -------------------------------------------------------------

    @staticmethod
    def _status_json(status: BindingStatus) -> str:
        return json.dumps(
            {
                "scheduler_observed_generation": status.scheduler_observed_generation,
                "aggregated_status": [s.to_dict() for s in status.aggregated_status],
                "conditions": [c.to_dict() for c in status.conditions],
            }
        )

    @staticmethod
    def _tasks_json(tasks: Sequence[EvictionTask]) -> str:
        return json.dumps([t.to_dict() for t in tasks])

    def _write_full(self, conn: sqlite3.Connection, b: ResourceBinding) -> None:
        conn.execute(
            """
            UPDATE bindings
            SET generation=?, resource_version=?, deletion_timestamp=?, clusters=?, eviction_tasks=?, status=?
            WHERE namespace=? AND name=?
            """,
            (
                b.generation,
                b.resource_version,
                format_time(b.deletion_timestamp) if b.deletion_timestamp else None,
                json.dumps(list(b.spec.clusters)),
                self._tasks_json(b.spec.eviction_tasks),
                self._status_json(b.status),
                b.namespace,
                b.name,
            ),
        )

    def upsert_binding(self, namespace: str, name: str, clusters: Sequence[str]) -> ResourceBinding:
        """Create a binding, or replace its placement. A placement change bumps the generation."""
        with self._session(write=True) as conn:
            try:
                old = self._fetch(conn, namespace, name)
            except NotFound:
                old = None
            if old is None:
                new = ResourceBinding(namespace=namespace, name=name, spec=BindingSpec(clusters=tuple(clusters)))
                conn.execute(
                    """
                    INSERT INTO bindings (namespace, name, generation, resource_version, deletion_timestamp,
                                          clusters, eviction_tasks, status, created_at)
                    VALUES (?, ?, ?, ?, NULL, ?, ?, ?, ?)
                    """,
                    (
                        namespace,
                        name,
                        new.generation,
                        new.resource_version,
                        json.dumps(list(new.spec.clusters)),
                        self._tasks_json(()),
                        self._status_json(new.status),
                        format_time(self.clock.now()),
                    ),
                )
                event: BindingEvent = CreateEvent(new)
            else:
                if tuple(clusters) == old.spec.clusters:
                    return old
                new = replace(
                    old,
                    generation=old.generation + 1,
                    resource_version=old.resource_version + 1,
                    spec=replace(old.spec, clusters=tuple(clusters)),
                )
                self._write_full(conn, new)
                event = UpdateEvent(old, new)
        self._broadcast(event)
        return new

    def reschedule(
        self,
        namespace: str,
        name: str,
        clusters: Sequence[str],
        evictions: Sequence[EvictionTask] = (),
    ) -> ResourceBinding:
        """Apply a scheduling decision: new placement plus eviction tasks for the clusters being left.

        The decision lands in one write, so the observed generation already
        matches the new generation when watchers see it.
        """
        now = self.clock.now()
        with self._session(write=True) as conn:
            old = self._fetch(conn, namespace, name)
            generation = old.generation + 1
            status = replace(
                old.status,
                scheduler_observed_generation=generation,
                conditions=set_condition(
                    old.status.conditions,
                    Condition(
                        type=CONDITION_SCHEDULED,
                        status="True",
                        reason="BindingScheduled",
                        message="Binding has been scheduled",
                        last_transition_time=now,
                    ),
                ),
            )
            new = replace(
                old,
                generation=generation,
                resource_version=old.resource_version + 1,
                spec=BindingSpec(
                    clusters=tuple(clusters),
                    eviction_tasks=old.spec.eviction_tasks + tuple(evictions),
                ),
                status=status,
            )
            self._write_full(conn, new)
        self._broadcast(UpdateEvent(old, new))
        return new

    def update_status(
        self, namespace: str, name: str, aggregated_status: Sequence[AggregatedStatusItem]
    ) -> ResourceBinding:
        with self._session(write=True) as conn:
            old = self._fetch(conn, namespace, name)
            new = replace(
                old,
                resource_version=old.resource_version + 1,
                status=replace(old.status, aggregated_status=tuple(aggregated_status)),
            )
            self._write_full(conn, new)
        self._broadcast(UpdateEvent(old, new))
        return new

    def patch_eviction_tasks(
        self, binding: ResourceBinding, tasks: Sequence[EvictionTask], timeout_s: float | None = None
    ) -> ResourceBinding:
        """Replace spec.eviction_tasks only, if the stored object is still at binding.resource_version."""
        with self._session(write=True, timeout_s=timeout_s) as conn:
            cur = conn.execute(
                """
                UPDATE bindings
                SET eviction_tasks=?, resource_version=resource_version+1
                WHERE namespace=? AND name=? AND resource_version=?
                """,
                (self._tasks_json(tasks), binding.namespace, binding.name, binding.resource_version),
            )
            if cur.rowcount == 0:
                current = self._fetch(conn, binding.namespace, binding.name)
                raise Conflict(
                    f"binding {binding.key} changed: have resource_version "
                    f"{binding.resource_version}, store has {current.resource_version}"
                )
            new = self._fetch(conn, binding.namespace, binding.name)
        self._broadcast(UpdateEvent(binding, new))
        return new

    def delete(self, namespace: str, name: str) -> ResourceBinding:
        """Mark the binding as deleting, then remove it."""
        with self._session(write=True) as conn:
            old = self._fetch(conn, namespace, name)
            marked = replace(old, resource_version=old.resource_version + 1, deletion_timestamp=self.clock.now())
            conn.execute("DELETE FROM bindings WHERE namespace=? AND name=?", (namespace, name))
        self._broadcast(UpdateEvent(old, marked))
        self._broadcast(DeleteEvent(marked))
        return marked
