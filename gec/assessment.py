"""Eviction assessment and retry scheduling.

Both functions are pure: no I/O, no clock reads, no hidden state. The
controller captures ``now`` once per reconcile cycle and passes it in.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from .models import HEALTHY, AggregatedStatusItem, EvictionTask

HealthCriterion = Callable[[AggregatedStatusItem], bool]

MIN_RETRY_DELAY = timedelta(milliseconds=1)

# Per-task decisions
KEEP = "Keep"
TIMED_OUT = "TimedOut"
MIGRATED = "Migrated"
DUPLICATE = "Duplicate"


def default_health_criterion(item: AggregatedStatusItem) -> bool:
    """The workload is applied on the cluster and reports itself healthy."""
    return item.applied and item.health == HEALTHY


def healthy_clusters(
    aggregated_status: Iterable[AggregatedStatusItem],
    is_healthy: HealthCriterion = default_health_criterion,
) -> frozenset[str]:
    return frozenset(item.cluster_name for item in aggregated_status if is_healthy(item))


def _authoritative(tasks: Sequence[EvictionTask]) -> set[int]:
    """Indexes of the one task kept per cluster: earliest created_at, first in list on ties.

    Malformed tasks (no created_at) lose to any well-formed duplicate.
    """
    best: dict[str, int] = {}
    for i, task in enumerate(tasks):
        j = best.get(task.from_cluster)
        if j is None:
            best[task.from_cluster] = i
            continue
        cur = tasks[j].created_at
        if task.created_at is not None and (cur is None or task.created_at < cur):
            best[task.from_cluster] = i
    return set(best.values())


def classify_eviction_tasks(
    tasks: Sequence[EvictionTask],
    aggregated_status: Sequence[AggregatedStatusItem],
    timeout: timedelta,
    now: datetime,
    is_healthy: HealthCriterion = default_health_criterion,
) -> list[tuple[EvictionTask, str]]:
    """Pair every task with its decision: KEEP, TIMED_OUT, MIGRATED or DUPLICATE.

    Only the authoritative task per cluster is judged on time and status;
    every other task for that cluster is a DUPLICATE.
    """
    healthy = healthy_clusters(aggregated_status, is_healthy)
    authoritative = _authoritative(tasks)

    decisions: list[tuple[EvictionTask, str]] = []
    for i, task in enumerate(tasks):
        if i not in authoritative:
            decisions.append((task, DUPLICATE))
        elif evicted_by_timeout(task, timeout, now):
            decisions.append((task, TIMED_OUT))
        elif migration_confirmed(task, healthy):
            decisions.append((task, MIGRATED))
        else:
            decisions.append((task, KEEP))
    return decisions


def assess_eviction_tasks(
    tasks: Sequence[EvictionTask],
    aggregated_status: Sequence[AggregatedStatusItem],
    timeout: timedelta,
    now: datetime,
    is_healthy: HealthCriterion = default_health_criterion,
) -> list[EvictionTask]:
    """Return the tasks that must stay pending, in their original order.

    A task is finished (dropped) when its deadline has passed, or when its
    cluster no longer runs the workload healthily while some other cluster
    does. Duplicates per cluster collapse to the earliest-created task.
    """
    decisions = classify_eviction_tasks(tasks, aggregated_status, timeout, now, is_healthy)
    return [task for task, decision in decisions if decision == KEEP]


def evicted_by_timeout(task: EvictionTask, timeout: timedelta, now: datetime) -> bool:
    return now >= task.deadline(timeout, now)


def migration_confirmed(task: EvictionTask, healthy: frozenset[str]) -> bool:
    if task.from_cluster in healthy:
        return False
    return any(c != task.from_cluster for c in healthy)


def next_retry(tasks: Sequence[EvictionTask], timeout: timedelta, now: datetime) -> timedelta | None:
    """Delay until the earliest pending deadline, or None when nothing is pending.

    The result is never above ``timeout`` and never below MIN_RETRY_DELAY.
    """
    if not tasks:
        return None

    delay = timeout
    for task in tasks:
        remaining = task.deadline(timeout, now) - now
        if remaining < delay:
            delay = remaining
    if delay <= timedelta(0):
        # Should have been dropped by the assessor in the same pass.
        return MIN_RETRY_DELAY
    return delay
