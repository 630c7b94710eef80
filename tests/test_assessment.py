from datetime import timedelta

import pytest

from conftest import T0
from gec.assessment import (
    DUPLICATE,
    KEEP,
    MIGRATED,
    MIN_RETRY_DELAY,
    TIMED_OUT,
    assess_eviction_tasks,
    classify_eviction_tasks,
    default_health_criterion,
    next_retry,
)
from gec.models import HEALTHY, UNHEALTHY, AggregatedStatusItem, EvictionTask

TWO_MIN = timedelta(minutes=2)


def _task(cluster, offset_s=0, grace=None, reason=""):
    return EvictionTask(
        from_cluster=cluster,
        created_at=T0 + timedelta(seconds=offset_s),
        grace_period_seconds=grace,
        reason=reason,
    )


def _healthy(cluster):
    return AggregatedStatusItem(cluster_name=cluster, applied=True, health=HEALTHY)


def test_expired_task_is_dropped_without_status():
    # Scenario A
    tasks = [_task("m1")]
    kept = assess_eviction_tasks(tasks, [], TWO_MIN, T0 + timedelta(minutes=3))
    assert kept == []
    assert next_retry(kept, TWO_MIN, T0 + timedelta(minutes=3)) is None


def test_only_the_evicted_cluster_reporting_keeps_task():
    # Scenario B
    tasks = [_task("m1")]
    now = T0 + timedelta(seconds=30)
    kept = assess_eviction_tasks(tasks, [_healthy("m1")], TWO_MIN, now)
    assert kept == tasks
    assert next_retry(kept, TWO_MIN, now) == timedelta(seconds=90)


def test_retry_targets_earliest_deadline():
    # Scenario C
    tasks = [_task("m1", grace=10), _task("m2", grace=40)]
    kept = assess_eviction_tasks(tasks, [], TWO_MIN, T0)
    assert kept == tasks
    assert next_retry(kept, TWO_MIN, T0) == timedelta(seconds=10)


def test_confirmed_migration_drops_task_before_timeout():
    # Scenario D
    tasks = [_task("m1")]
    now = T0 + timedelta(seconds=5)
    kept = assess_eviction_tasks(tasks, [_healthy("m2")], timedelta(minutes=5), now)
    assert kept == []


def test_unhealthy_other_cluster_does_not_confirm_migration():
    tasks = [_task("m1")]
    status = [AggregatedStatusItem(cluster_name="m2", applied=True, health=UNHEALTHY)]
    kept = assess_eviction_tasks(tasks, status, TWO_MIN, T0 + timedelta(seconds=5))
    assert kept == tasks


def test_not_applied_other_cluster_does_not_confirm_migration():
    tasks = [_task("m1")]
    status = [AggregatedStatusItem(cluster_name="m2", applied=False, health=HEALTHY)]
    kept = assess_eviction_tasks(tasks, status, TWO_MIN, T0 + timedelta(seconds=5))
    assert kept == tasks


def test_still_healthy_on_evicted_cluster_keeps_task_even_with_other_healthy():
    tasks = [_task("m1")]
    status = [_healthy("m1"), _healthy("m2")]
    kept = assess_eviction_tasks(tasks, status, TWO_MIN, T0 + timedelta(seconds=5))
    assert kept == tasks


def test_deadline_boundary_is_inclusive():
    tasks = [_task("m1")]
    assert assess_eviction_tasks(tasks, [], TWO_MIN, T0 + TWO_MIN - timedelta(seconds=1)) == tasks
    assert assess_eviction_tasks(tasks, [], TWO_MIN, T0 + TWO_MIN) == []


@pytest.mark.parametrize("grace", [0, -30])
def test_non_positive_grace_drops_on_first_pass(grace):
    assert assess_eviction_tasks([_task("m1", grace=grace)], [], TWO_MIN, T0) == []


def test_grace_override_extends_past_global_timeout():
    tasks = [_task("m1", grace=600)]
    now = T0 + timedelta(minutes=5)
    kept = assess_eviction_tasks(tasks, [], TWO_MIN, now)
    assert kept == tasks
    # Never later than one global timeout from now.
    assert next_retry(kept, TWO_MIN, now) == TWO_MIN


def test_malformed_task_is_treated_as_expired():
    good = _task("m2")
    bad = EvictionTask(from_cluster="m1", created_at=None)
    kept = assess_eviction_tasks([bad, good], [], TWO_MIN, T0)
    assert kept == [good]


def test_duplicates_collapse_to_earliest_and_keep_order():
    later = _task("m1", offset_s=20, reason="second")
    earliest = _task("m1", offset_s=0, reason="first")
    other = _task("m2", offset_s=10)
    kept = assess_eviction_tasks([later, other, earliest], [], TWO_MIN, T0 + timedelta(seconds=30))
    assert kept == [other, earliest]
    assert len({t.from_cluster for t in kept}) == len(kept)


def test_duplicates_with_equal_timestamps_keep_first_listed():
    a = _task("m1", reason="a")
    b = _task("m1", reason="b")
    assert assess_eviction_tasks([a, b], [], TWO_MIN, T0) == [a]


def test_malformed_duplicate_never_wins():
    bad = EvictionTask(from_cluster="m1", created_at=None, reason="bad")
    good = _task("m1", reason="good")
    assert assess_eviction_tasks([bad, good], [], TWO_MIN, T0) == [good]


def test_order_of_retained_tasks_is_preserved():
    tasks = [_task("c"), _task("a", grace=1), _task("b"), _task("d")]
    kept = assess_eviction_tasks(tasks, [], TWO_MIN, T0 + timedelta(seconds=5))
    assert [t.from_cluster for t in kept] == ["c", "b", "d"]


def test_assess_is_pure():
    tasks = [_task("m1"), _task("m2", grace=5), _task("m1", offset_s=1)]
    status = [_healthy("m1")]
    now = T0 + timedelta(seconds=3)
    first = assess_eviction_tasks(tasks, status, TWO_MIN, now)
    second = assess_eviction_tasks(tasks, status, TWO_MIN, now)
    assert first == second
    assert len(tasks) == 3


def test_custom_health_criterion():
    tasks = [_task("m1")]
    status = [AggregatedStatusItem(cluster_name="m2", applied=True, health="Unknown")]

    def applied_is_enough(item):
        return item.applied

    now = T0 + timedelta(seconds=1)
    assert assess_eviction_tasks(tasks, status, TWO_MIN, now) == tasks
    assert assess_eviction_tasks(tasks, status, TWO_MIN, now, is_healthy=applied_is_enough) == []


def test_default_health_criterion():
    assert default_health_criterion(_healthy("m1")) is True
    assert default_health_criterion(AggregatedStatusItem(cluster_name="m1")) is False


def test_next_retry_none_only_when_empty():
    assert next_retry([], TWO_MIN, T0) is None
    assert next_retry([_task("m1")], TWO_MIN, T0) == TWO_MIN


def test_next_retry_clamps_past_deadlines():
    tasks = [_task("m1")]
    delay = next_retry(tasks, TWO_MIN, T0 + timedelta(minutes=10))
    assert delay == MIN_RETRY_DELAY
    assert delay > timedelta(0)


def test_next_retry_bounds_for_mixed_tasks():
    tasks = [_task("m1", offset_s=-30), _task("m2", grace=3600), _task("m3", offset_s=15)]
    delay = next_retry(tasks, TWO_MIN, T0)
    assert delay == timedelta(seconds=90)
    assert timedelta(0) < delay <= TWO_MIN


def test_timestamps_are_pinned_to_seconds():
    a = EvictionTask(from_cluster="m1", created_at=T0.replace(microsecond=999))
    b = EvictionTask(from_cluster="m1", created_at=T0)
    assert a == b


def test_classify_judges_the_authoritative_task_and_flags_the_rest():
    dup = _task("m1", offset_s=60, reason="dup")
    first = _task("m1", reason="first")
    gone = _task("m3")
    pending = _task("m4", offset_s=100)
    status = [_healthy("m2")]
    decisions = classify_eviction_tasks([dup, first, gone, pending], status, TWO_MIN, T0 + timedelta(minutes=2, seconds=5))
    assert decisions == [(dup, DUPLICATE), (first, TIMED_OUT), (gone, TIMED_OUT), (pending, MIGRATED)]


def test_classify_marks_identical_copies_as_duplicates():
    task = _task("m1")
    assert classify_eviction_tasks([task, task], [], TWO_MIN, T0) == [(task, KEEP), (task, DUPLICATE)]


@pytest.mark.parametrize("raw", ["garbage", None, {"from_cluster": "m1", "created_at": "2024-05-01T12:00:00Z", "grace_period_seconds": "soon"}])
def test_unreadable_task_data_is_malformed(raw):
    task = EvictionTask.from_dict(raw)
    assert task.created_at is None
    assert assess_eviction_tasks([task], [], TWO_MIN, T0) == []
