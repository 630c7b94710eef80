from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Thread
from typing import Callable, Protocol, Sequence

from .alerts import eviction_timeout_alert
from .assessment import (
    DUPLICATE,
    KEEP,
    MIGRATED,
    TIMED_OUT,
    HealthCriterion,
    classify_eviction_tasks,
    default_health_criterion,
    healthy_clusters,
    next_retry,
)
from .db import NotFound, StoreError, Watch
from .informer import Informer
from .models import EvictionTask, ResourceBinding, split_key
from .predicates import Funcs, binding_predicate
from .ratelimit import RateLimiterOptions, default_controller_rate_limiter
from .recorder import NORMAL, WARNING, EventRecorder
from .runtime import Clock, ControllerStats
from .workqueue import RateLimitingQueue

CONTROLLER_NAME = "resource-binding-graceful-eviction-controller"


class ReconcileTimeout(Exception):
    """A reconcile attempt ran past its per-attempt deadline."""


class BindingClient(Protocol):
    def get(self, namespace: str, name: str, timeout_s: float | None = None) -> ResourceBinding: ...

    def patch_eviction_tasks(
        self, binding: ResourceBinding, tasks: Sequence[EvictionTask], timeout_s: float | None = None
    ) -> ResourceBinding: ...

    def list_bindings(self, namespace: str | None = None) -> list[ResourceBinding]: ...

    def watch(self) -> Watch: ...

    def log_event(self, level: str, message: str, binding: str | None = None, reason: str | None = None) -> None: ...


@dataclass(frozen=True)
class Result:
    requeue_after: timedelta | None = None


class GracefulEvictionController:
    """Drops finished eviction tasks from bindings and wakes up at the next deadline."""

    def __init__(
        self,
        client: BindingClient,
        clock: Clock,
        graceful_eviction_timeout: timedelta,
        rate_limiter_options: RateLimiterOptions | None = None,
        recorder: EventRecorder | None = None,
        reconcile_timeout_s: float = 10.0,
        is_healthy: HealthCriterion = default_health_criterion,
        stats: ControllerStats | None = None,
        alert: Callable[[str, str], bool] | None = eviction_timeout_alert,
        queue: RateLimitingQueue | None = None,
    ):
        self.client = client
        self.clock = clock
        self.timeout = graceful_eviction_timeout
        self.rate_limiter_options = rate_limiter_options if rate_limiter_options is not None else RateLimiterOptions()
        self.recorder = recorder if recorder is not None else EventRecorder(client, CONTROLLER_NAME)
        self.reconcile_timeout_s = max(0.01, float(reconcile_timeout_s))
        self.is_healthy = is_healthy
        self.stats = stats if stats is not None else ControllerStats()
        self.alert = alert
        if queue is None:
            queue = RateLimitingQueue(default_controller_rate_limiter(self.rate_limiter_options), name=CONTROLLER_NAME)
        self.queue = queue
        self.predicate: Funcs = binding_predicate()
        self.informer: Informer | None = None
        self._workers: list[Thread] = []

    # -- one cycle --------------------------------------------------------------

    def _remaining(self, key: str, deadline: float) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ReconcileTimeout(f"reconcile of {key} exceeded {self.reconcile_timeout_s}s")
        return remaining

    def reconcile(self, key: str) -> Result:
        """Fetch -> assess -> conditional patch -> schedule, for one binding.

        Raises StoreError (Conflict, TransientStoreError) or ReconcileTimeout;
        the worker turns those into a rate-limited requeue. Every store call
        gets only what is left of the attempt's budget.
        """
        namespace, name = split_key(key)
        deadline = time.monotonic() + self.reconcile_timeout_s

        try:
            binding = self.client.get(namespace, name, timeout_s=self._remaining(key, deadline))
        except NotFound:
            self.stats.record(key, "gone")
            return Result()
        if binding.being_deleted:
            self.stats.record(key, "gone", "binding is being deleted")
            return Result()

        try:
            retry = self.sync_binding(binding, self.clock.now(), deadline)
        except NotFound:
            self.stats.record(key, "gone")
            return Result()
        return Result(requeue_after=retry)

    def sync_binding(self, binding: ResourceBinding, now: datetime, deadline: float | None = None) -> timedelta | None:
        current = list(binding.spec.eviction_tasks)
        decisions = classify_eviction_tasks(
            current, binding.status.aggregated_status, self.timeout, now, self.is_healthy
        )
        kept = [task for task, decision in decisions if decision == KEEP]
        if kept == current:
            self.stats.record(binding.key, "converged")
            return next_retry(kept, self.timeout, now)

        timeout_s = self._remaining(binding.key, deadline) if deadline is not None else None
        self.client.patch_eviction_tasks(binding, kept, timeout_s=timeout_s)
        self.stats.record(binding.key, "patched", f"{len(current)} -> {len(kept)} eviction tasks")
        self._record_finished(binding, decisions)
        return next_retry(kept, self.timeout, now)

    def _record_finished(self, binding: ResourceBinding, decisions: list[tuple[EvictionTask, str]]) -> None:
        healthy = healthy_clusters(binding.status.aggregated_status, self.is_healthy)
        for task, decision in decisions:
            if decision == DUPLICATE:
                self.recorder.event(
                    binding,
                    NORMAL,
                    "EvictionTaskDeduplicated",
                    f"Dropped duplicate eviction task for cluster {task.from_cluster}",
                )
            elif decision == TIMED_OUT:
                if task.created_at is None:
                    message = f"Dropped malformed eviction task for cluster {task.from_cluster}"
                else:
                    message = f"Grace period for cluster {task.from_cluster} ran out before migration was confirmed"
                self.recorder.event(binding, WARNING, "EvictionTimedOut", message)
                if self.alert is not None and task.created_at is not None:
                    try:
                        self.alert(binding.key, task.from_cluster)
                    except Exception:
                        pass
            elif decision == MIGRATED:
                self.recorder.event(
                    binding,
                    NORMAL,
                    "EvictionCompleted",
                    f"Workload confirmed healthy on {', '.join(sorted(healthy))}; released cluster {task.from_cluster}",
                )

    # -- worker pool --------------------------------------------------------------

    def _log(self, level: str, message: str, key: str | None = None) -> None:
        try:
            self.client.log_event(level, message, binding=key)
        except StoreError:
            # Store is unavailable; the requeue will surface the error again.
            pass

    def process_next(self, timeout: float | None = None) -> bool:
        """Run one queued reconcile. Returns False once the queue is shutting down."""
        key, shutting_down = self.queue.get(timeout)
        if shutting_down:
            return False
        if key is None:
            return True
        try:
            result = self.reconcile(key)
        except (StoreError, ReconcileTimeout) as e:
            self.stats.record(key, "requeued", f"{type(e).__name__}: {e}")
            self._log("WARN", f"Reconcile requeued: {type(e).__name__}: {e}", key)
            self.queue.add_rate_limited(key)
        except Exception as e:
            self.stats.record(key, "error", f"{type(e).__name__}: {e}")
            self._log("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", key)
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after.total_seconds())
        finally:
            self.queue.done(key)
        return True

    def _worker(self) -> None:
        while self.process_next():
            pass

    def setup(self, resync_period_s: float = 300.0) -> Informer:
        """Register the binding watch, filtered by the eviction predicate."""
        self.informer = Informer(self.client, self.queue, self.predicate, resync_period_s=resync_period_s)
        return self.informer

    def start(self, workers: int = 1, resync_period_s: float = 300.0) -> None:
        if self._workers:
            return
        informer = self.informer or self.setup(resync_period_s)
        informer.start()
        for i in range(max(1, int(workers))):
            t = Thread(target=self._worker, name=f"gec-worker-{i}", daemon=True)
            t.start()
            self._workers.append(t)
        self._log("INFO", f"Graceful eviction controller started with {len(self._workers)} worker(s)")

    def stop(self, grace_s: float = 5.0) -> int:
        """Stop intake, wait up to grace_s for in-flight reconciles. Returns how many were abandoned."""
        if self.informer is not None:
            self.informer.stop()
        self.queue.shutdown()
        end = time.monotonic() + max(0.0, grace_s)
        for t in self._workers:
            t.join(max(0.0, end - time.monotonic()))
        abandoned = sum(1 for t in self._workers if t.is_alive())
        self._workers = []
        if self.informer is not None:
            self.informer.join(max(0.0, end - time.monotonic()))
        self._log("INFO", f"Graceful eviction controller stopped ({abandoned} reconcile(s) abandoned)")
        return abandoned
