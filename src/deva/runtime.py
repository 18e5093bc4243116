"""Container engine control interface and its Docker CLI implementation.

The lifecycle only talks to :class:`ContainerEngine`; the Docker
implementation shells out to the ``docker`` CLI with ``subprocess``.
Queries get a short timeout, while create, pull and start don't, since
those can legitimately be slow.
"""

from __future__ import annotations

import json
import re
import subprocess
from collections.abc import Mapping
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from deva.errors import (
    EngineError,
    EngineUnavailableError,
    ImageNotFoundError,
    NameConflictError,
    StartError,
)
from deva.logger import logger
from deva.types import ContainerInfo

if TYPE_CHECKING:
    from deva.launch import LaunchSpec

_QUERY_TIMEOUT = 30
_CONFLICT_RE = re.compile(r"already in use|Conflict")


@runtime_checkable
class ContainerEngine(Protocol):
    """Engine operations the launcher relies on."""

    name: str

    def ensure_running(self) -> None: ...
    def find_running(self, name: str) -> ContainerInfo | None: ...
    def find_any(self, name: str) -> ContainerInfo | None: ...
    def list_containers(
        self,
        *,
        all: bool = False,
        name_prefix: str | None = None,
        labels: Mapping[str, str] | None = None,
        status: str | None = None,
    ) -> list[ContainerInfo]: ...
    def inspect_labels(self, name: str) -> dict[str, str] | None: ...
    def create(self, spec: LaunchSpec) -> None: ...
    def start(self, name: str) -> None: ...
    def exec(self, spec: LaunchSpec) -> int: ...
    def run_ephemeral(self, spec: LaunchSpec) -> int: ...
    def shell(self, name: str) -> int: ...
    def stop(self, name: str) -> bool: ...
    def remove(self, name: str) -> bool: ...
    def image_exists(self, ref: str) -> bool: ...
    def pull(self, ref: str) -> bool: ...


def parse_labels(raw: str) -> dict[str, str]:
    """Parse the ``k=v,k2=v2`` label column of ``docker ps``."""
    labels: dict[str, str] = {}
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        if sep and key:
            labels[key.strip()] = value
    return labels


class DockerEngine:
    name = "docker"

    def __init__(self, cli: str = "docker") -> None:
        self.cli = cli

    # --- plumbing ---

    def _run(
        self,
        *args: str,
        timeout: int | None = _QUERY_TIMEOUT,
        capture: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                [self.cli, *args],
                capture_output=capture,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise EngineUnavailableError(
                f"{self.cli} CLI not found",
                hint="install Docker (or a compatible engine) and make sure it is on PATH",
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise EngineUnavailableError(
                f"{self.cli} {args[0]} did not answer within {timeout}s"
            ) from exc

    # --- health ---

    def ensure_running(self) -> None:
        result = self._run("info")
        if result.returncode != 0:
            raise EngineUnavailableError(
                "Docker is required but not running",
                hint="start the Docker daemon (e.g. sudo systemctl start docker)",
            )
        logger.debug("Docker daemon is running")

    # --- queries ---

    def list_containers(
        self,
        *,
        all: bool = False,
        name_prefix: str | None = None,
        labels: Mapping[str, str] | None = None,
        status: str | None = None,
    ) -> list[ContainerInfo]:
        args = ["ps", "--format", "{{json .}}"]
        if all:
            args.append("-a")
        if name_prefix:
            args += ["--filter", f"name={name_prefix}"]
        for key, value in (labels or {}).items():
            args += ["--filter", f"label={key}={value}"]
        if status:
            args += ["--filter", f"status={status}"]

        result = self._run(*args)
        if result.returncode != 0:
            # A failed query must never read as an empty listing
            raise EngineUnavailableError(f"failed to list containers: {result.stderr.strip()}")

        containers = []
        for line in result.stdout.strip().splitlines():
            if not line:
                continue
            row = json.loads(line)
            name = row.get("Names", "")
            # The name filter is a substring match
            if name_prefix and not name.startswith(name_prefix):
                continue
            containers.append(
                ContainerInfo(
                    name=name,
                    status=row.get("Status", ""),
                    running=row.get("State", "") == "running",
                    created=row.get("CreatedAt", ""),
                    labels=parse_labels(row.get("Labels", "")),
                )
            )
        return containers

    def _find(self, name: str, *, all: bool) -> ContainerInfo | None:
        for info in self.list_containers(all=all, name_prefix=name):
            if info.name == name:
                return info
        return None

    def find_running(self, name: str) -> ContainerInfo | None:
        info = self._find(name, all=False)
        return info if info and info.running else None

    def find_any(self, name: str) -> ContainerInfo | None:
        return self._find(name, all=True)

    def inspect_labels(self, name: str) -> dict[str, str] | None:
        result = self._run("inspect", "-f", "{{json .Config.Labels}}", name)
        if result.returncode != 0:
            return None
        return json.loads(result.stdout.strip() or "null") or {}

    # --- mutations ---

    def create(self, spec: LaunchSpec) -> None:
        """Create a persistent container; name collisions raise :class:`NameConflictError`."""
        result = self._run(*spec.create_args(), timeout=None)
        if result.returncode == 0:
            logger.debug("Created container", container=spec.name)
            return
        if _CONFLICT_RE.search(result.stderr):
            raise NameConflictError(f"container name {spec.name} is in use", stderr=result.stderr)
        raise EngineError(f"failed to create container {spec.name}", stderr=result.stderr)

    def start(self, name: str) -> None:
        result = self._run("start", name, timeout=None)
        if result.returncode != 0:
            raise StartError(f"failed to start container {name}", stderr=result.stderr)

    def exec(self, spec: LaunchSpec) -> int:
        return self._run(*spec.exec_args(), timeout=None, capture=False).returncode

    def run_ephemeral(self, spec: LaunchSpec) -> int:
        result = self._run(*spec.run_args(), timeout=None, capture=False)
        if result.returncode == 125:
            # 125 is docker's own failure, not the agent's exit status
            raise EngineError(f"failed to launch ephemeral container {spec.name}")
        return result.returncode

    def shell(self, name: str) -> int:
        args = ["exec", "-it", name, "gosu", "deva", "/bin/zsh", "-l"]
        return self._run(*args, timeout=None, capture=False).returncode

    def stop(self, name: str) -> bool:
        result = self._run("stop", name, timeout=None)
        if result.returncode != 0:
            logger.warning("Failed to stop container", container=name, err=result.stderr.strip())
        return result.returncode == 0

    def remove(self, name: str) -> bool:
        result = self._run("rm", "-f", name, timeout=None)
        if result.returncode != 0:
            logger.warning("Failed to remove container", container=name, err=result.stderr.strip())
        return result.returncode == 0

    # --- images ---

    def image_exists(self, ref: str) -> bool:
        return self._run("image", "inspect", ref).returncode == 0

    def pull(self, ref: str) -> bool:
        logger.info("Pulling Docker image (first run may take a minute)", image=ref)
        result = self._run("pull", ref, timeout=None)
        if result.returncode != 0:
            logger.debug("Image pull failed", image=ref, err=result.stderr.strip())
        return result.returncode == 0


# ---------------------------------------------------------------------------
# Image resolution
# ---------------------------------------------------------------------------


def resolve_image(
    engine: ContainerEngine,
    image: str,
    tag: str,
    *,
    fallback_tags: tuple[str, ...] = ("rust", "latest"),
    profile: str | None = None,
) -> str:
    """Return a usable image reference, pulling or falling back as needed."""
    ref = f"{image}:{tag}"
    if engine.image_exists(ref) or engine.pull(ref):
        return ref

    for candidate in fallback_tags:
        if candidate == tag:
            continue
        fallback = f"{image}:{candidate}"
        if engine.image_exists(fallback):
            logger.warning("Image not found, using available image", wanted=ref, using=fallback)
            return fallback

    if profile == "rust":
        hint = f"build with: make build-rust, or: docker build -f Dockerfile.rust -t {ref} ."
    elif profile in (None, "base"):
        hint = f"pull with: docker pull {ref}, or build with: make build"
    else:
        hint = f"build your Dockerfile and tag it as {ref}"
    raise ImageNotFoundError(f"Docker image {ref} not found locally", hint=hint)
