"""Credential-aware mount composition.

Builds the :class:`~deva.types.MountPlan` for one launch so that exactly
the credentials the active auth method needs end up inside the container:

- Default auth mounts every credential root wholesale.
- Any other method walks each root, skips credential files that belong to
  other methods and, when a directory holds such a file, mounts that
  directory's remaining children one by one instead of the directory.

Config roots are validated before anything is mounted so a config value
can't point the composer at an arbitrary host path.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from pathlib import Path

from deva.agents.base import CONTAINER_HOME, AuthMethod, BaseAgent
from deva.errors import MountError
from deva.logger import logger
from deva.types import AuthContext, CredentialRoot, Mount, MountPlan

# Entries of a config root that never hold agent state
_SKIPPED_ROOT_ENTRIES = frozenset({"_shared"})


# ---------------------------------------------------------------------------
# Config root validation
# ---------------------------------------------------------------------------


def validate_config_root(
    path: str | os.PathLike[str],
    *,
    home: Path | None = None,
    xdg_config: Path | None = None,
) -> Path:
    """Reject config roots outside ``$HOME``, ``$XDG_CONFIG_HOME`` or ``/tmp/deva-*``."""
    raw = os.fspath(path)
    if not os.path.isabs(raw):
        raise MountError(f"config root must be an absolute path: {raw}")
    if ".." in raw or "//" in raw or "\n" in raw or "\t" in raw:
        raise MountError(f"config root contains an invalid path pattern: {raw!r}")

    home = home or Path.home()
    xdg_config = xdg_config or Path(os.environ.get("XDG_CONFIG_HOME") or home / ".config")
    candidate = Path(raw)
    allowed = (
        candidate.is_relative_to(home)
        or candidate.is_relative_to(xdg_config)
        or any(
            p.parent == Path("/tmp") and p.name.startswith("deva-")
            for p in (candidate, *candidate.parents)
        )
    )
    if not allowed or candidate in (home, xdg_config):
        raise MountError(
            f"config root must be under {home} or {xdg_config}: {raw}",
            hint="pass a dedicated directory such as ~/.config/deva",
        )
    return candidate


# ---------------------------------------------------------------------------
# Exclusion tables
# ---------------------------------------------------------------------------


def exclusions_for(
    agents: Mapping[str, BaseAgent], auth: AuthContext
) -> dict[str, frozenset[str]]:
    """Map each agent name to the credential files that must stay hidden.

    The active agent hides every file owned by its other methods.  Agents
    that aren't running hide all of their credential files, since none of
    their methods is active in this container.
    """
    table: dict[str, frozenset[str]] = {}
    for name, agent in agents.items():
        if name == auth.agent_name:
            table[name] = agent.excluded_files(auth.method)
        else:
            table[name] = frozenset(f for m in agent.methods for f in m.credential_files)
    return table


# ---------------------------------------------------------------------------
# Walking credential roots
# ---------------------------------------------------------------------------


def _children(directory: Path) -> list[Path]:
    try:
        return sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as exc:
        logger.warning("Cannot list credential directory", path=str(directory), err=str(exc))
        return []


def compose_entry(source: Path, destination: str, excluded: frozenset[str]) -> list[Mount]:
    """Mounts exposing ``source`` at ``destination`` minus ``excluded`` names.

    Goes one level deep: a directory that directly holds an excluded file
    is split into per-child mounts.
    """
    if source.name in excluded:
        logger.debug("Excluded credential file", path=str(source))
        return []
    if source.is_dir() and any((source / name).exists() for name in excluded):
        mounts = []
        for child in _children(source):
            if child.name in excluded:
                logger.debug("Excluded credential file", path=str(child))
                continue
            mounts.append(Mount(str(child), f"{destination}/{child.name}"))
        return mounts
    return [Mount(str(source), destination)]


def compose_root(root: CredentialRoot, excluded: frozenset[str]) -> list[Mount]:
    if root.contents:
        mounts: list[Mount] = []
        for entry in _children(root.source):
            if entry.name in _SKIPPED_ROOT_ENTRIES:
                continue
            mounts.extend(compose_entry(entry, f"{root.destination}/{entry.name}", excluded))
        return mounts
    if not root.source.exists():
        return []
    return compose_entry(root.source, root.destination, excluded)


def compose_credential_mounts(
    roots: Sequence[CredentialRoot],
    agents: Mapping[str, BaseAgent],
    auth: AuthContext,
) -> list[Mount]:
    """Credential mounts for every root, honoring the active auth method."""
    if auth.is_default:
        table: dict[str, frozenset[str]] = {}
    else:
        table = exclusions_for(agents, auth)

    mounts: list[Mount] = []
    for root in roots:
        mounts.extend(compose_root(root, table.get(root.agent, frozenset())))
    return mounts


# ---------------------------------------------------------------------------
# Method-specific mounts
# ---------------------------------------------------------------------------


def custom_credential_mount(auth: AuthContext, method: AuthMethod) -> Mount | None:
    """Mount for a user-supplied credential file; fails if the file is missing."""
    if not auth.credential_file:
        return None
    path = Path(auth.credential_file)
    if not path.is_file():
        raise MountError(
            f"credential file not found: {path}",
            hint="check --credentials-file / CUSTOM_CREDENTIALS_FILE",
        )
    if method.custom_file_target is None:
        raise MountError(f"auth method '{method.name}' does not take a credential file")
    gcloud = f"{CONTAINER_HOME}/.config/gcloud"
    mode = "ro" if method.custom_file_target.startswith(gcloud) else "rw"
    return Mount(str(path), method.custom_file_target, mode)


def host_mounts(
    method: AuthMethod, *, home: Path, environ: Mapping[str, str]
) -> list[Mount]:
    """Host directories the method reads (``~/.aws``, gcloud, ADC key file)."""
    mounts = []
    for spec in method.host_mounts:
        source = spec.resolve(home)
        if source.exists():
            mounts.append(Mount(str(source), spec.destination, spec.mode))

    if method.name == "vertex":
        adc = environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        if adc and os.path.isfile(adc):
            mounts.append(Mount(adc, adc, "ro"))
    return mounts


# ---------------------------------------------------------------------------
# User volumes
# ---------------------------------------------------------------------------


def parse_volume(spec: str) -> Mount:
    parts = spec.split(":")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise MountError(f"Invalid volume specification: {spec}", hint="use SRC:DEST[:ro|rw]")
    mode = "ro" if len(parts) > 2 and parts[2] == "ro" else "rw"
    return Mount(parts[0], parts[1], mode)


def user_volume_mounts(volumes: Sequence[str]) -> list[Mount]:
    mounts = [parse_volume(v) for v in volumes]
    legacy = [m for m in mounts if m.destination.startswith("/root/")]
    if legacy:
        logger.warning(
            "Volume mounted under /root; the container user's home is /home/deva",
            mount=legacy[0].to_volume_arg(),
        )
    return mounts


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def compose_mounts(
    agent: BaseAgent,
    auth: AuthContext,
    roots: Sequence[CredentialRoot],
    agents: Mapping[str, BaseAgent],
    *,
    volumes: Sequence[str] = (),
    home: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> MountPlan:
    """Build the credential and volume mounts for one launch.

    Raises :class:`MountError` before returning anything when a custom
    credential file is missing or a volume spec is malformed.
    """
    home = home or Path.home()
    environ = os.environ if environ is None else environ
    method = agent.auth_method(auth.method)

    custom = custom_credential_mount(auth, method)
    mounts = compose_credential_mounts(roots, agents, auth)
    if custom is not None:
        # The custom file replaces whatever sat at its target
        mounts = [m for m in mounts if m.destination != custom.destination]
        mounts.append(custom)
    mounts.extend(host_mounts(method, home=home, environ=environ))
    mounts.extend(user_volume_mounts(volumes))

    logger.debug(
        "Composed mounts",
        agent=agent.name,
        auth=auth.method,
        count=len(mounts),
    )
    return MountPlan(tuple(mounts))
