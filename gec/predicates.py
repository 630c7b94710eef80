from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from .events import BindingEvent, CreateEvent, DeleteEvent, GenericEvent, UpdateEvent
from .models import ResourceBinding

BindingFilter = Callable[[ResourceBinding], bool]


def never(_event: object) -> bool:
    return False


def has_eviction_tasks(b: ResourceBinding) -> bool:
    return len(b.spec.eviction_tasks) > 0


def scheduling_settled(b: ResourceBinding) -> bool:
    """The latest placement decision has landed; the scheduler is not mid-flight."""
    return b.status.scheduler_observed_generation == b.generation


def all_of(*filters: BindingFilter) -> BindingFilter:
    def _check(b: ResourceBinding) -> bool:
        return all(f(b) for f in filters)

    return _check


def on_new_object(f: BindingFilter) -> Callable[[UpdateEvent], bool]:
    def _check(event: UpdateEvent) -> bool:
        return f(event.new)

    return _check


@dataclass(frozen=True)
class Funcs:
    """One boolean function per event kind, chosen at registration time."""

    create: Callable[[CreateEvent], bool] = never
    update: Callable[[UpdateEvent], bool] = never
    delete: Callable[[DeleteEvent], bool] = never
    generic: Callable[[GenericEvent], bool] = never

    def admits(self, event: BindingEvent) -> bool:
        if isinstance(event, UpdateEvent):
            return self.update(event)
        if isinstance(event, CreateEvent):
            return self.create(event)
        if isinstance(event, DeleteEvent):
            return self.delete(event)
        return self.generic(event)


def binding_predicate(extra: Sequence[BindingFilter] = ()) -> Funcs:
    """Admit only updates whose new object has pending evictions and a settled schedule."""
    return Funcs(update=on_new_object(all_of(has_eviction_tasks, scheduling_settled, *extra)))
