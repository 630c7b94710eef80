from dataclasses import replace

import pytest

from conftest import T0
from gec.events import CreateEvent, DeleteEvent, GenericEvent, UpdateEvent
from gec.models import BindingSpec, BindingStatus, EvictionTask, ResourceBinding
from gec.predicates import binding_predicate, has_eviction_tasks, scheduling_settled


def _binding(tasks=1, generation=3, observed=3):
    return ResourceBinding(
        namespace="default",
        name="nginx",
        generation=generation,
        spec=BindingSpec(
            clusters=("m2",),
            eviction_tasks=tuple(EvictionTask(from_cluster=f"m{i}", created_at=T0) for i in range(tasks)),
        ),
        status=BindingStatus(scheduler_observed_generation=observed),
    )


def test_update_with_tasks_and_settled_schedule_is_admitted():
    b = _binding()
    assert binding_predicate().admits(UpdateEvent(old=b, new=b))


def test_update_without_tasks_is_rejected():
    b = _binding(tasks=0)
    assert not binding_predicate().admits(UpdateEvent(old=b, new=b))


def test_update_while_scheduler_is_behind_is_rejected():
    b = _binding(generation=4, observed=3)
    assert not binding_predicate().admits(UpdateEvent(old=b, new=b))


def test_only_the_new_object_is_considered():
    old = _binding(tasks=0, generation=2, observed=1)
    new = _binding()
    assert binding_predicate().admits(UpdateEvent(old=old, new=new))
    assert not binding_predicate().admits(UpdateEvent(old=new, new=old))


@pytest.mark.parametrize("event_cls", [CreateEvent, DeleteEvent, GenericEvent])
def test_other_event_kinds_are_never_admitted(event_cls):
    assert not binding_predicate().admits(event_cls(_binding()))


def test_extra_filters_compose():
    b = _binding()
    only_prod = binding_predicate(extra=[lambda x: x.namespace == "prod"])
    assert not only_prod.admits(UpdateEvent(old=b, new=b))
    prod = replace(b, namespace="prod")
    assert only_prod.admits(UpdateEvent(old=prod, new=prod))


def test_filters_individually():
    assert has_eviction_tasks(_binding())
    assert not has_eviction_tasks(_binding(tasks=0))
    assert scheduling_settled(_binding(generation=5, observed=5))
    assert not scheduling_settled(_binding(generation=5, observed=4))
