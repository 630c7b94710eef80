import pytest

from gec.informer import Informer
from gec.models import EvictionTask
from gec.predicates import binding_predicate
from gec.ratelimit import ItemExponentialFailureRateLimiter
from gec.workqueue import RateLimitingQueue


@pytest.fixture
def q():
    queue = RateLimitingQueue(ItemExponentialFailureRateLimiter(0.001, 0.05), name="test")
    yield queue
    queue.shutdown()


def test_resync_enqueues_only_bindings_with_pending_evictions(store, clock, q):
    store.upsert_binding("default", "idle", ["m1"])
    store.upsert_binding("default", "moving", ["m1"])
    store.reschedule("default", "moving", ["m2"], [EvictionTask("m1", clock.now())])

    informer = Informer(store, q, binding_predicate(), resync_period_s=0)
    assert informer.resync() == 1
    assert q.get(timeout=1) == ("default/moving", False)


def test_live_events_reach_the_queue(store, clock, q):
    informer = Informer(store, q, binding_predicate(), resync_period_s=0, poll_s=0.05)
    informer.start()
    try:
        store.upsert_binding("default", "nginx", ["m1"])
        store.reschedule("default", "nginx", ["m2"], [EvictionTask("m1", clock.now())])
        key, _ = q.get(timeout=2)
        assert key == "default/nginx"
    finally:
        informer.stop()
        informer.join(1)


def test_create_events_are_filtered_out(store, q):
    informer = Informer(store, q, binding_predicate(), resync_period_s=0, poll_s=0.05)
    informer.start()
    try:
        store.upsert_binding("default", "nginx", ["m1"])
        assert q.get(timeout=0.3) == (None, False)
    finally:
        informer.stop()
        informer.join(1)
