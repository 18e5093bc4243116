"""Shared test fixtures for deva."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

import pytest

from deva.errors import NameConflictError
from deva.types import ContainerInfo

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "image_tag",
        "image_ref",
        "deva_home",
        "session_dir",
        "loaded_config_files",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (container_prefix, volumes, etc.) and cached
    property overrides (session_dir, image_ref, etc.).

    Usage::

        s = make_settings(session_dir=tmp_path / "sessions")
        s = make_settings(lifecycle=LifecycleConfig(race_wait_attempts=2))
    """
    from deva.config import CopilotConfig, LifecycleConfig, Settings

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "lifecycle": LifecycleConfig(),
        "copilot": CopilotConfig(),
        "volumes": [],
        "env": [],
        "extra_generic_parents": [],
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)
    s.__dict__.setdefault("loaded_config_files", [])

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


# ---------------------------------------------------------------------------
# In-memory container engine
# ---------------------------------------------------------------------------


@dataclass
class FakeContainer:
    name: str
    running: bool = True
    labels: dict[str, str] = field(default_factory=dict)


class FakeEngine:
    """ContainerEngine backed by a dict.

    ``preempt`` simulates a concurrent invocation: the next ``create`` of
    that name finds the container already there (running unless told
    otherwise) and fails with a name conflict.
    """

    name = "fake"

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.images: set[str] = {"ghcr.io/thevibeworks/deva:latest"}
        self.pullable: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.exec_code = 0
        self._preempted: dict[str, FakeContainer] = {}

    # --- test setup ---

    def add(self, name: str, *, running: bool = True, **labels: str) -> FakeContainer:
        container = FakeContainer(name, running, dict(labels))
        self.containers[name] = container
        return container

    def preempt(self, name: str, *, running: bool = True, **labels: str) -> None:
        self._preempted[name] = FakeContainer(name, running, dict(labels))

    def ops(self, op: str) -> list[str]:
        return [name for kind, name in self.calls if kind == op]

    # --- protocol ---

    def ensure_running(self) -> None:
        self.calls.append(("ensure_running", ""))

    def _info(self, c: FakeContainer) -> ContainerInfo:
        status = "Up 1 minute" if c.running else "Exited (0) 1 minute ago"
        return ContainerInfo(c.name, status, c.running, "2025-01-01 00:00:00", dict(c.labels))

    def find_running(self, name: str) -> ContainerInfo | None:
        c = self.containers.get(name)
        return self._info(c) if c and c.running else None

    def find_any(self, name: str) -> ContainerInfo | None:
        c = self.containers.get(name)
        return self._info(c) if c else None

    def list_containers(
        self,
        *,
        all: bool = False,
        name_prefix: str | None = None,
        labels: Mapping[str, str] | None = None,
        status: str | None = None,
    ) -> list[ContainerInfo]:
        out = []
        for c in self.containers.values():
            if not all and not c.running:
                continue
            if name_prefix and not c.name.startswith(name_prefix):
                continue
            if labels and any(c.labels.get(k) != v for k, v in labels.items()):
                continue
            if status == "exited" and c.running:
                continue
            out.append(self._info(c))
        return out

    def inspect_labels(self, name: str) -> dict[str, str] | None:
        c = self.containers.get(name)
        return dict(c.labels) if c else None

    def create(self, spec) -> None:
        self.calls.append(("create", spec.name))
        if spec.name in self._preempted:
            self.containers[spec.name] = self._preempted.pop(spec.name)
            raise NameConflictError(f"container name {spec.name} is in use")
        if spec.name in self.containers:
            raise NameConflictError(f"container name {spec.name} is in use")
        self.containers[spec.name] = FakeContainer(spec.name, True, dict(spec.labels))

    def start(self, name: str) -> None:
        self.calls.append(("start", name))
        self.containers[name].running = True

    def exec(self, spec) -> int:
        self.calls.append(("exec", spec.name))
        return self.exec_code

    def run_ephemeral(self, spec) -> int:
        self.calls.append(("run", spec.name))
        return self.exec_code

    def shell(self, name: str) -> int:
        self.calls.append(("shell", name))
        return 0

    def stop(self, name: str) -> bool:
        self.calls.append(("stop", name))
        if name not in self.containers:
            return False
        self.containers[name].running = False
        return True

    def remove(self, name: str) -> bool:
        self.calls.append(("remove", name))
        return self.containers.pop(name, None) is not None

    def image_exists(self, ref: str) -> bool:
        return ref in self.images

    def pull(self, ref: str) -> bool:
        self.calls.append(("pull", ref))
        if ref in self.pullable:
            self.images.add(ref)
            return True
        return False


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults, with no TOML files
    and no DEVA_* environment, so tests are isolated from the user's config.
    """
    from deva.agents import reset_agents

    safe = make_settings()
    monkeypatch.setattr("deva.config._settings", safe)
    monkeypatch.setattr("deva.config._config_files_enabled", True)
    reset_agents()
    yield
    reset_agents()


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def home(tmp_path, monkeypatch):
    """An empty fake $HOME with XDG config under it."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    return home
