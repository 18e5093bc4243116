"""Immutable launch specification.

Everything the engine needs to create or run a container is assembled
once into a :class:`LaunchSpec`; nothing downstream appends to it.  The
spec renders the engine argument lists itself so dry runs, the Docker
engine and tests all see the same commands.
"""

from __future__ import annotations

import os
import re
import stat
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from deva.agents.base import BaseAgent
from deva.config import Settings
from deva.types import AuthContext, ContainerIdentity, LaunchCommand, Mount, MountPlan

ENTRYPOINT = "/usr/local/bin/docker-entrypoint.sh"
PLACEHOLDER_COMMAND = ("tail", "-f", "/dev/null")
DOCKER_SOCKET = "/var/run/docker.sock"
HOST_GATEWAY = "host.docker.internal"

_LOCALHOST_RE = re.compile(r"localhost|127\.0\.0\.1")

# Host variables forwarded as-is when set
_PASSTHROUGH_ENV = (
    "LANG",
    "LC_ALL",
    "TZ",
    "GIT_AUTHOR_NAME",
    "GIT_AUTHOR_EMAIL",
    "GIT_COMMITTER_NAME",
    "GIT_COMMITTER_EMAIL",
    "GH_TOKEN",
    "GITHUB_TOKEN",
)
# Host variables treated like user -e specs, so auth filtering applies
_IMPLICIT_USER_ENV = ("OPENAI_API_KEY", "OPENAI_ORGANIZATION", "OPENAI_BASE_URL", "openai_base_url")


@dataclass(frozen=True)
class LaunchSpec:
    name: str
    image: str
    workspace: str
    command: tuple[str, ...]
    mounts: MountPlan = MountPlan()
    env: tuple[tuple[str, str], ...] = ()
    labels: tuple[tuple[str, str], ...] = ()
    ports: tuple[str, ...] = ()
    host_net: bool = False
    ephemeral: bool = False

    def env_value(self, key: str) -> str | None:
        for k, v in self.env:
            if k == key:
                return v
        return None

    def label(self, key: str) -> str | None:
        return dict(self.labels).get(key)

    def renamed(self, name: str) -> LaunchSpec:
        """Same spec under another container name."""
        env = tuple((k, name if k == "DEVA_CONTAINER_NAME" else v) for k, v in self.env)
        return replace(self, name=name, env=env)

    def _container_args(self) -> list[str]:
        args = [
            "--name",
            self.name,
            "-v",
            f"{self.workspace}:{self.workspace}",
            "-w",
            self.workspace,
            "--add-host",
            f"{HOST_GATEWAY}:host-gateway",
        ]
        if self.host_net:
            args += ["--net", "host"]
        for mount in self.mounts:
            args += ["-v", mount.to_volume_arg()]
        for key, value in self.env:
            args += ["-e", f"{key}={value}"]
        for key, value in self.labels:
            args += ["--label", f"{key}={value}"]
        for port in self.ports:
            args += ["-p", port]
        return args

    def create_args(self) -> list[str]:
        """``docker run -d`` for a persistent container idling on a placeholder."""
        return ["run", "-d", *self._container_args(), self.image, *PLACEHOLDER_COMMAND]

    def exec_args(self) -> list[str]:
        return ["exec", "-it", self.name, ENTRYPOINT, *self.command]

    def run_args(self) -> list[str]:
        """``docker run --rm -it`` running the agent as the primary process."""
        return ["run", "--rm", "-it", *self._container_args(), self.image, *self.command]


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def translate_localhost(value: str) -> str:
    return _LOCALHOST_RE.sub(HOST_GATEWAY, value)


def detect_host_timezone(localtime: Path = Path("/etc/localtime")) -> str | None:
    try:
        target = os.readlink(localtime)
    except OSError:
        return None
    _, sep, zone = target.partition("/zoneinfo/")
    return zone if sep and zone else None


def _proxy_env(environ: Mapping[str, str]) -> list[tuple[str, str]]:
    env = []
    for name in ("HTTP_PROXY", "HTTPS_PROXY"):
        value = environ.get(name) or environ.get(name.lower())
        if value:
            env.append((name, translate_localhost(value)))
    no_proxy = environ.get("NO_PROXY") or environ.get("no_proxy")
    if no_proxy:
        env.append(("NO_PROXY", no_proxy))
    return env


def filter_user_env(
    specs: Sequence[str], blocked: Sequence[str], present: set[str]
) -> list[tuple[str, str]]:
    """Drop specs the auth method blocks or that are already set; dedupe by name."""
    out: list[tuple[str, str]] = []
    seen = set(present)
    for spec in specs:
        name, _, value = spec.partition("=")
        if not name or name in blocked or name in seen:
            continue
        seen.add(name)
        out.append((name, value))
    return out


def _docker_socket_available(path: str = DOCKER_SOCKET) -> bool:
    try:
        return stat.S_ISSOCK(os.stat(path).st_mode)
    except OSError:
        return False


def build_labels(identity: ContainerIdentity, auth: AuthContext) -> tuple[tuple[str, str], ...]:
    labels = [
        ("deva.prefix", identity.prefix),
        ("deva.slug", identity.slug),
        ("deva.workspace", identity.workspace),
        ("deva.workspace_hash", identity.workspace_hash),
        ("deva.agent", auth.agent_name),
        ("deva.ephemeral", "true" if identity.ephemeral else "false"),
    ]
    if identity.volume_hash:
        labels.append(("deva.volhash", identity.volume_hash))
    if not auth.is_default:
        labels.append(("deva.auth", auth.method))
    return tuple(labels)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def build_launch_spec(
    *,
    name: str,
    identity: ContainerIdentity,
    image: str,
    agent: BaseAgent,
    command: LaunchCommand,
    auth: AuthContext,
    mounts: MountPlan,
    settings: Settings,
    user_env: Sequence[str] = (),
    environ: Mapping[str, str] | None = None,
    shell: bool = False,
) -> LaunchSpec:
    """Assemble the full spec for one launch.

    ``shell`` replaces the agent command with a login shell (``deva shell``
    on a fresh container).
    """
    environ = os.environ if environ is None else environ
    env: list[tuple[str, str]] = [
        ("WORKDIR", identity.workspace),
        ("DEVA_AGENT", auth.agent_name),
        ("DEVA_UID", str(os.getuid())),
        ("DEVA_GID", str(os.getgid())),
    ]
    env.extend((k, environ[k]) for k in _PASSTHROUGH_ENV if environ.get(k))
    if not environ.get("TZ") and (tz := detect_host_timezone()):
        env.append(("TZ", tz))
    env.extend(_proxy_env(environ))

    # Agent-provided auth env wins over any host value of the same name
    agent_keys = {k for k, _ in command.env}
    env = [(k, v) for k, v in env if k not in agent_keys]
    env.extend(command.env)

    env.append(("DEVA_AUTH_METHOD", auth.method))
    if auth.details:
        env.append(("DEVA_AUTH_DETAILS", auth.details))
    env.extend(
        [
            ("DEVA_CONTAINER_NAME", name),
            ("DEVA_WORKSPACE", identity.workspace),
            ("DEVA_EPHEMERAL", "true" if identity.ephemeral else "false"),
        ]
    )

    implicit = [f"{k}={environ[k]}" for k in _IMPLICIT_USER_ENV if environ.get(k)]
    blocked = agent.auth_method(auth.method).blocked_env
    env.extend(filter_user_env([*user_env, *implicit], blocked, {k for k, _ in env}))

    extra_mounts: list[Mount] = []
    if not settings.no_docker and _docker_socket_available():
        extra_mounts.append(Mount(DOCKER_SOCKET, DOCKER_SOCKET))

    return LaunchSpec(
        name=name,
        image=image,
        workspace=identity.workspace,
        command=("/bin/zsh",) if shell else command.argv,
        mounts=mounts + MountPlan(tuple(extra_mounts)),
        env=tuple(env),
        labels=build_labels(identity, auth),
        ports=command.ports,
        host_net=settings.host_net,
        ephemeral=identity.ephemeral,
    )
