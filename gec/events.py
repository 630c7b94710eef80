from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .models import ResourceBinding


@dataclass(frozen=True)
class CreateEvent:
    obj: ResourceBinding


@dataclass(frozen=True)
class UpdateEvent:
    old: ResourceBinding
    new: ResourceBinding


@dataclass(frozen=True)
class DeleteEvent:
    obj: ResourceBinding


@dataclass(frozen=True)
class GenericEvent:
    obj: ResourceBinding


BindingEvent = Union[CreateEvent, UpdateEvent, DeleteEvent, GenericEvent]


def event_key(event: BindingEvent) -> str:
    if isinstance(event, UpdateEvent):
        return event.new.key
    return event.obj.key
