from __future__ import annotations

from typing import Protocol

from .models import ResourceBinding

NORMAL = "Normal"
WARNING = "Warning"


class EventSink(Protocol):
    def log_event(self, level: str, message: str, binding: str | None = None, reason: str | None = None) -> None: ...


class EventRecorder:
    """Fire-and-forget object events. A failing sink never reaches the caller."""

    def __init__(self, sink: EventSink, component: str):
        self.sink = sink
        self.component = component

    def event(self, binding: ResourceBinding, event_type: str, reason: str, message: str) -> None:
        level = "WARN" if event_type == WARNING else "INFO"
        try:
            self.sink.log_event(level, f"[{self.component}] {message}", binding=binding.key, reason=reason)
        except Exception:
            pass
