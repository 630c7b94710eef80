import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest


# Ensure project root is importable (so `import main` / `import gec` work without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from gec.db import BindingStore, Conflict, NotFound  # noqa: E402

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeClient:
    """In-memory binding client that counts writes and can inject failures."""

    def __init__(self, *bindings):
        self.bindings = {b.key: b for b in bindings}
        self.patches = []
        self.events = []
        self.fail_patch_with = None
        self.fail_get_with = None
        self.timeouts = []

    def get(self, namespace, name, timeout_s=None):
        self.timeouts.append(("get", timeout_s))
        if self.fail_get_with is not None:
            raise self.fail_get_with
        key = f"{namespace}/{name}"
        if key not in self.bindings:
            raise NotFound(key)
        return self.bindings[key]

    def patch_eviction_tasks(self, binding, tasks, timeout_s=None):
        self.timeouts.append(("patch", timeout_s))
        if self.fail_patch_with is not None:
            raise self.fail_patch_with
        stored = self.bindings.get(binding.key)
        if stored is None:
            raise NotFound(binding.key)
        if stored.resource_version != binding.resource_version:
            raise Conflict(binding.key)
        new = replace(
            stored,
            resource_version=stored.resource_version + 1,
            spec=replace(stored.spec, eviction_tasks=tuple(tasks)),
        )
        self.bindings[binding.key] = new
        self.patches.append((binding.key, list(tasks)))
        return new

    def list_bindings(self, namespace=None):
        return list(self.bindings.values())

    def watch(self):
        raise NotImplementedError

    def log_event(self, level, message, binding=None, reason=None):
        self.events.append((level, reason, binding, message))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    s = BindingStore(str(tmp_path / "gec.db"), timeout_s=2, clock=clock)
    s.init_db()
    return s
