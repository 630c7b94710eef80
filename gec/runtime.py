from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_time(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime(TIME_FORMAT)


def parse_time(raw: str) -> datetime:
    return datetime.strptime(raw, TIME_FORMAT).replace(tzinfo=timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock, truncated to the second like every stored timestamp."""

    def now(self) -> datetime:
        return utc_now()


@dataclass
class ReconcileRecord:
    key: str
    outcome: str  # converged|patched|requeued|error|gone
    message: str = ""
    at: str = field(default_factory=lambda: format_time(utc_now()))


class ControllerStats:
    """In-memory counters for the reconcile loop, exposed over the API."""

    def __init__(self, history: int = 50) -> None:
        self.lock = Lock()
        self.history = max(1, int(history))
        self.counts: dict[str, int] = {}  # outcome -> total
        self.recent: list[ReconcileRecord] = []

    def record(self, key: str, outcome: str, message: str = "") -> None:
        with self.lock:
            self.counts[outcome] = self.counts.get(outcome, 0) + 1
            self.recent.append(ReconcileRecord(key=key, outcome=outcome, message=message))
            if len(self.recent) > self.history:
                self.recent = self.recent[-self.history :]

    def snapshot(self) -> dict[str, object]:
        with self.lock:
            return {
                "counts": dict(self.counts),
                "recent": [r.__dict__.copy() for r in reversed(self.recent)],
            }
