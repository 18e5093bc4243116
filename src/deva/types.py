"""Data models for deva."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

MountMode = Literal["ro", "rw"]
SessionStatus = Literal["running", "stopped", "removed"]

# Separators used when assembling container names.  ``..`` never appears in
# a sanitized slug, so name components stay unambiguous.
NAME_COMPONENT_SEP = ".."


@dataclass(frozen=True)
class AuthContext:
    """Resolved authentication for one invocation. Immutable once built."""

    agent_name: str
    method: str
    details: str = ""
    credential_file: str | None = None
    default_method: str = ""

    @property
    def is_default(self) -> bool:
        return self.method == self.default_method

    def to_dict(self) -> dict[str, str]:
        data = {"method": self.method, "details": self.details}
        if self.credential_file:
            data["credential_file"] = self.credential_file
        return data


@dataclass(frozen=True)
class ContainerIdentity:
    """Deterministic tuple naming a container.

    ``slug`` is for humans; uniqueness comes from ``workspace_hash`` (via
    :meth:`disambiguated_name`), ``volume_hash`` and ``auth_suffix``.
    """

    prefix: str
    slug: str
    workspace: str
    workspace_hash: str
    volume_hash: str | None = None
    auth_suffix: str | None = None
    ephemeral: bool = False
    agent: str = ""
    pid: int | None = None

    def _assemble(self, *, with_workspace_hash: bool) -> str:
        name = f"{self.prefix}-{self.slug}"
        if with_workspace_hash:
            name += f"{NAME_COMPONENT_SEP}w{self.workspace_hash}"
        if self.volume_hash:
            name += f"{NAME_COMPONENT_SEP}v{self.volume_hash}"
        if self.auth_suffix:
            name += f"{NAME_COMPONENT_SEP}{self.auth_suffix}"
        if self.ephemeral:
            name += f"-{self.agent}-{self.pid}"
        return name

    @property
    def container_name(self) -> str:
        return self._assemble(with_workspace_hash=False)

    @property
    def disambiguated_name(self) -> str:
        """Name used when another workspace already owns :attr:`container_name`."""
        return self._assemble(with_workspace_hash=True)


@dataclass(frozen=True)
class Mount:
    source: str
    destination: str
    mode: MountMode = "rw"

    def to_volume_arg(self) -> str:
        spec = f"{self.source}:{self.destination}"
        return f"{spec}:ro" if self.mode == "ro" else spec


@dataclass(frozen=True)
class MountPlan:
    """Ordered, immutable list of bind mounts."""

    mounts: tuple[Mount, ...] = ()

    def __iter__(self):
        return iter(self.mounts)

    def __len__(self) -> int:
        return len(self.mounts)

    def __add__(self, other: MountPlan) -> MountPlan:
        return MountPlan(self.mounts + other.mounts)

    def sources(self) -> list[str]:
        return [m.source for m in self.mounts]

    def destinations(self) -> list[str]:
        return [m.destination for m in self.mounts]


@dataclass(frozen=True)
class LaunchCommand:
    """What an agent module wants run inside the container."""

    argv: tuple[str, ...]
    env: tuple[tuple[str, str], ...] = ()
    ports: tuple[str, ...] = ()


@dataclass(frozen=True)
class CredentialRoot:
    """A host location that may hold agent credentials.

    ``contents`` roots are directories whose entries are mounted one by one
    under ``destination``; otherwise the path itself maps to ``destination``.
    """

    agent: str
    source: Path
    destination: str
    contents: bool = False


@dataclass
class ContainerInfo:
    """One row from the engine's container listing."""

    name: str
    status: str = ""
    running: bool = False
    created: str = ""
    labels: dict[str, str] = field(default_factory=dict)
