from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from .runtime import format_time, parse_time

HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"
UNKNOWN = "Unknown"

CONDITION_SCHEDULED = "Scheduled"


def _truncate(ts: datetime | None) -> datetime | None:
    """Pin timestamps to whole seconds in UTC so equality is exact."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(microsecond=0)


def _time_or_none(raw: Any) -> datetime | None:
    if not raw or not isinstance(raw, str):
        return None
    try:
        return parse_time(raw)
    except ValueError:
        return None


@dataclass(frozen=True)
class EvictionTask:
    """A pending request to stop serving the workload from one cluster.

    ``created_at`` may be None for a malformed record; such a task is treated
    as already expired by the assessor.
    """

    from_cluster: str
    created_at: datetime | None
    grace_period_seconds: int | None = None
    reason: str = ""
    producer: str = ""
    message: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "created_at", _truncate(self.created_at))

    def deadline(self, timeout: timedelta, now: datetime) -> datetime:
        if self.created_at is None:
            return now
        if self.grace_period_seconds is not None:
            return self.created_at + timedelta(seconds=self.grace_period_seconds)
        return self.created_at + timeout

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_cluster": self.from_cluster,
            "created_at": format_time(self.created_at) if self.created_at else None,
            "grace_period_seconds": self.grace_period_seconds,
            "reason": self.reason,
            "producer": self.producer,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EvictionTask":
        """Build a task from its stored form.

        Anything unreadable yields a malformed task (created_at None), which
        the assessor drops on the next pass instead of blocking the binding.
        """
        if not isinstance(data, dict):
            return cls(from_cluster="", created_at=None, message=f"unreadable eviction task: {data!r}")
        created_at = _time_or_none(data.get("created_at"))
        grace = data.get("grace_period_seconds")
        if grace is not None:
            try:
                grace = int(grace)
            except (TypeError, ValueError):
                grace, created_at = None, None
        return cls(
            from_cluster=str(data.get("from_cluster", "")),
            created_at=created_at,
            grace_period_seconds=grace,
            reason=data.get("reason") or "",
            producer=data.get("producer") or "",
            message=data.get("message") or "",
        )


@dataclass(frozen=True)
class AggregatedStatusItem:
    cluster_name: str
    applied: bool = False
    health: str = UNKNOWN
    applied_message: str = ""
    status: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_name": self.cluster_name,
            "applied": self.applied,
            "health": self.health,
            "applied_message": self.applied_message,
            "status": dict(self.status),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AggregatedStatusItem":
        return cls(
            cluster_name=str(data.get("cluster_name", "")),
            applied=bool(data.get("applied", False)),
            health=data.get("health") or UNKNOWN,
            applied_message=data.get("applied_message") or "",
            status=dict(data.get("status") or {}),
        )


@dataclass(frozen=True)
class Condition:
    type: str
    status: str  # True|False|Unknown
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "last_transition_time", _truncate(self.last_transition_time))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "last_transition_time": format_time(self.last_transition_time) if self.last_transition_time else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Condition":
        return cls(
            type=str(data.get("type", "")),
            status=str(data.get("status", "Unknown")),
            reason=data.get("reason") or "",
            message=data.get("message") or "",
            last_transition_time=_time_or_none(data.get("last_transition_time")),
        )


def set_condition(conditions: tuple[Condition, ...], new: Condition) -> tuple[Condition, ...]:
    """Replace the condition of the same type; keep the transition time if the status did not change."""
    out: list[Condition] = []
    found = False
    for c in conditions:
        if c.type != new.type:
            out.append(c)
            continue
        found = True
        if c.status == new.status:
            new = replace(new, last_transition_time=c.last_transition_time)
        out.append(new)
    if not found:
        out.append(new)
    return tuple(out)


def condition_is_true(conditions: tuple[Condition, ...], cond_type: str) -> bool:
    return any(c.type == cond_type and c.status == "True" for c in conditions)


@dataclass(frozen=True)
class BindingSpec:
    clusters: tuple[str, ...] = ()
    eviction_tasks: tuple[EvictionTask, ...] = ()


@dataclass(frozen=True)
class BindingStatus:
    scheduler_observed_generation: int = 0
    aggregated_status: tuple[AggregatedStatusItem, ...] = ()
    conditions: tuple[Condition, ...] = ()


@dataclass(frozen=True)
class ResourceBinding:
    """Where a workload is placed, plus its in-flight eviction bookkeeping."""

    namespace: str
    name: str
    generation: int = 1
    resource_version: int = 1
    deletion_timestamp: datetime | None = None
    spec: BindingSpec = field(default_factory=BindingSpec)
    status: BindingStatus = field(default_factory=BindingStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "generation": self.generation,
            "resource_version": self.resource_version,
            "deletion_timestamp": format_time(self.deletion_timestamp) if self.deletion_timestamp else None,
            "spec": {
                "clusters": list(self.spec.clusters),
                "eviction_tasks": [t.to_dict() for t in self.spec.eviction_tasks],
            },
            "status": {
                "scheduler_observed_generation": self.status.scheduler_observed_generation,
                "aggregated_status": [s.to_dict() for s in self.status.aggregated_status],
                "conditions": [c.to_dict() for c in self.status.conditions],
            },
        }


NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-\.]{0,251}[a-z0-9])?$")


def validate_name(value: str, what: str = "name") -> None:
    if not NAME_RE.match(value):
        raise ValueError(
            f"Invalid {what} {value!r}. Use lowercase letters/numbers, '-' and '.', "
            "starting and ending with a letter or number (max 253 chars)."
        )


def validate_health(value: str) -> None:
    if value not in {HEALTHY, UNHEALTHY, UNKNOWN}:
        raise ValueError(f"health must be one of {HEALTHY}|{UNHEALTHY}|{UNKNOWN}, got {value!r}.")


def split_key(key: str) -> tuple[str, str]:
    namespace, sep, name = key.partition("/")
    if not sep or not namespace or not name:
        raise ValueError(f"invalid binding key {key!r}, expected <namespace>/<name>")
    return namespace, name
