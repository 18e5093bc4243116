"""Management commands: ps, status, shell, stop, rm, clean, show-config.

Commands are scoped to the current workspace: containers labeled with its
workspace hash first, then (for containers without labels) names derived
from its slug.  ``-g`` widens the scope to every container with the deva
prefix.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from deva.config import Settings
from deva.errors import DevaError
from deva.identity import generate_slug, slug_name_pattern, workspace_hash
from deva.registry import SessionRegistry
from deva.runtime import ContainerEngine
from deva.types import ContainerInfo

_EPHEMERAL_RE = re.compile(r"-([a-z]+)-([0-9]+)$")
_SECRET_RE = re.compile(r"(API_KEY|TOKEN|SECRET|PASSWORD)$")


@dataclass
class CommandContext:
    settings: Settings
    engine: ContainerEngine
    registry: SessionRegistry
    workspace: Path
    global_mode: bool = False
    input_fn: Callable[[str], str] = input
    out: Callable[[str], None] = print
    loaded_files: list[Path] = field(default_factory=list)

    @property
    def prefix(self) -> str:
        return self.settings.container_prefix


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def agent_from_name(name: str, prefix: str) -> str:
    """Agent encoded in an ephemeral name, else ``share`` for persistent ones."""
    rest = name.removeprefix(f"{prefix}-")
    match = _EPHEMERAL_RE.search(rest)
    return match.group(1) if match else "share"


def project_containers(
    ctx: CommandContext, *, all: bool = False, status: str | None = None
) -> list[ContainerInfo]:
    """Containers belonging to the current workspace (or every deva container with ``-g``)."""
    engine = ctx.engine
    if ctx.global_mode:
        return engine.list_containers(all=all, name_prefix=f"{ctx.prefix}-", status=status)

    by_label = engine.list_containers(
        all=all, labels={"deva.workspace_hash": workspace_hash(ctx.workspace)}, status=status
    )
    if by_label:
        return by_label

    slug = generate_slug(ctx.workspace, ctx.settings.extra_generic_parents)
    pattern = slug_name_pattern(ctx.prefix, slug)
    candidates = engine.list_containers(all=all, name_prefix=f"{ctx.prefix}-", status=status)
    return [c for c in candidates if pattern.search(c.name)]


def pick_container(ctx: CommandContext, containers: list[ContainerInfo]) -> str | None:
    """One container name; asks the user when there are several."""
    if not containers:
        return None
    if len(containers) == 1:
        return containers[0].name

    ctx.out("Matching containers:")
    for idx, info in enumerate(containers, start=1):
        agent = agent_from_name(info.name, ctx.prefix)
        ctx.out(f"  {idx}) {info.name}\t[{agent}]\t{info.status}\t{info.created}")
    choice = ctx.input_fn(f"Select container (1-{len(containers)}): ").strip()
    if choice.isdigit() and 1 <= int(choice) <= len(containers):
        return containers[int(choice) - 1].name
    return None


def _format_table(rows: list[list[str]]) -> list[str]:
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return [
        "  ".join(cell.ljust(w) for cell, w in zip(row, widths, strict=True)).rstrip()
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_ps(ctx: CommandContext) -> int:
    containers = project_containers(ctx)
    if not containers:
        ctx.out(f"No running containers found for project {ctx.workspace.name}")
        return 0
    rows = [["NAME", "AGENT", "STATUS", "CREATED AT"]]
    rows += [[c.name, agent_from_name(c.name, ctx.prefix), c.status, c.created] for c in containers]
    for line in _format_table(rows):
        ctx.out(line)
    return 0


def cmd_status(ctx: CommandContext, *, show_all: bool = False) -> int:
    show_all = show_all or ctx.global_mode
    ws_hash = None if show_all else workspace_hash(ctx.workspace)
    sessions = ctx.registry.list_sessions(ctx.engine, workspace_hash=ws_hash)
    if not sessions:
        if show_all:
            ctx.out("No active sessions found")
        else:
            ctx.out("No active sessions for this workspace")
            ctx.out("Use 'deva status --all' to see all sessions")
        return 0

    ctx.out("=== All Active Sessions ===" if show_all else "=== Container Status ===")
    for record in sessions:
        ctx.out("")
        ctx.out(f"Container: {record.container}")
        ctx.out(f"  Agent:     {record.agent}")
        ctx.out(f"  Status:    {record.status}")
        ctx.out(f"  Workspace: {record.workspace}")
        ctx.out(f"  Auth:      {record.auth.method}")
        if record.auth.details:
            ctx.out(f"  Details:   {record.auth.details}")
        ctx.out(f"  Ephemeral: {str(record.ephemeral).lower()}")
        ctx.out(f"  Started:   {record.started_at}")
        ctx.out(f"  Last Seen: {record.last_seen}")
    return 0


def _pick_running(ctx: CommandContext) -> str:
    name = pick_container(ctx, project_containers(ctx))
    if name is None:
        raise DevaError(f"no running containers found for project {ctx.workspace.name}")
    return name


def cmd_shell(ctx: CommandContext) -> int:
    name = _pick_running(ctx)
    ctx.out(f"Opening shell in container: {name}")
    return ctx.engine.shell(name)


def cmd_stop(ctx: CommandContext) -> int:
    name = _pick_running(ctx)
    ctx.out(f"Stopping container: {name}")
    return 0 if ctx.engine.stop(name) else 1


def _remove(ctx: CommandContext, name: str) -> bool:
    if not ctx.engine.remove(name):
        return False
    ctx.registry.delete(name)
    return True


def cmd_rm(ctx: CommandContext, *, remove_all: bool = False) -> int:
    containers = project_containers(ctx, all=True)
    if not containers:
        ctx.out("No deva containers found for this project")
        return 0

    if remove_all:
        ctx.out("Removing all containers for this workspace:")
        failed = 0
        for info in containers:
            if _remove(ctx, info.name):
                ctx.out(f"  removed: {info.name}")
            else:
                ctx.out(f"  failed:  {info.name}")
                failed += 1
        return 1 if failed else 0

    name = pick_container(ctx, containers)
    if name is None:
        raise DevaError("no container selected")
    ctx.out(f"Removing container: {name}")
    return 0 if _remove(ctx, name) else 1


def cmd_clean(ctx: CommandContext) -> int:
    ctx.out("Removing all stopped deva containers...")
    stopped = project_containers(ctx, all=True, status="exited")
    if stopped:
        for info in stopped:
            _remove(ctx, info.name)
        ctx.out("Cleaned up stopped containers")
    else:
        ctx.out("No stopped containers found")

    pruned = ctx.registry.prune_stale(ctx.engine)
    if pruned:
        ctx.out(f"Pruned {len(pruned)} stale session record(s)")
    return 0


def _mask_env(spec: str) -> str:
    name, sep, _ = spec.partition("=")
    return f"{name}=<masked>" if sep and _SECRET_RE.search(name) else spec


def cmd_show_config(
    ctx: CommandContext,
    *,
    agent: str,
    config_home: str | None,
    volumes: list[str],
    env: list[str],
) -> int:
    s = ctx.settings
    out = ctx.out
    out("=== deva Configuration ===")
    out("")
    out(f"Active Agent: {agent}")
    out(f"Default Agent: {s.default_agent}")
    out(f"Config Home: {config_home or '<none>'}")
    out(f"Session Dir: {s.session_dir}")
    out("")
    if ctx.loaded_files:
        out("Loaded config files (in order):")
        for path in ctx.loaded_files:
            out(f"  - {path}")
    else:
        out("No config files loaded")
    out("")
    if volumes:
        out("Volume mounts:")
        for vol in volumes:
            out(f"  -v {vol}")
    else:
        out("No volume mounts")
    out("")
    if env:
        out("Environment variables:")
        for spec in env:
            out(f"  -e {_mask_env(spec)}")
    else:
        out("No environment variables")
    out("")
    out(f"Docker image: {s.image_ref}")
    out(f"Container prefix: {s.container_prefix}")
    return 0
