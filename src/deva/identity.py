"""Container identity resolution.

Maps a workspace path, its extra volume mounts and the auth context onto a
deterministic :class:`~deva.types.ContainerIdentity`::

    /home/dev/work/myapp                      -> deva-work-myapp
    ... + -v ~/keys:/home/deva/keys:ro        -> deva-work-myapp..v1a2b3c4d
    ... + claude --auth-with api-key          -> deva-work-myapp..api-key
    ... + --rm (pid 4242)                     -> deva-work-myapp-claude-4242

The slug favors readability.  Uniqueness comes from the hashes: the volume
hash and auth suffix are always part of the name, the workspace hash is
added when another workspace already owns the plain name (see
:mod:`deva.lifecycle`).
"""

from __future__ import annotations

import hashlib
import os
import re
from collections.abc import Iterable, Sequence
from pathlib import Path

from deva.errors import IdentityError
from deva.types import AuthContext, ContainerIdentity

HASH_WIDTH = 8

# Parent directories that say nothing about the project.  When the parent is
# one of these, the grandparent names the slug instead.
GENERIC_PARENTS: frozenset[str] = frozenset(
    {
        "src",
        "github.com",
        "gitlab.com",
        "bitbucket.org",
        "repos",
        "projects",
        "work",
        "code",
        "dev",
    }
)

# Directories that grant far too much access when used as a workspace.
_HIGH_RISK_DIRS = (
    "/",
    "/etc",
    "/usr",
    "/var",
    "/bin",
    "/sbin",
    "/lib",
    "/lib64",
    "/boot",
    "/dev",
    "/proc",
    "/sys",
    "/tmp",
    "/root",
    "/mnt",
    "/media",
    "/srv",
)

_NON_SLUG_RE = re.compile(r"[^a-zA-Z0-9]+")


# ---------------------------------------------------------------------------
# Workspace validation
# ---------------------------------------------------------------------------


def validate_workspace(path: str | os.PathLike[str]) -> Path:
    """Return the canonical absolute workspace path or raise :class:`IdentityError`."""
    raw = os.fspath(path)
    if not raw:
        raise IdentityError("workspace path is empty")
    if not os.path.isabs(raw):
        raise IdentityError(f"workspace path must be absolute: {raw}")
    canonical = Path(os.path.normpath(raw))
    if canonical == Path(canonical.anchor):
        raise IdentityError(
            "refusing to use the filesystem root as a workspace",
            hint="cd into a project directory first",
        )
    return canonical


def is_high_risk_workspace(path: Path, home: Path | None = None) -> bool:
    """True for directories like ``$HOME``, ``/etc`` or ``/tmp``."""
    home = home or Path.home()
    resolved = str(path)
    return resolved in _HIGH_RISK_DIRS or path == home or path == home.parent


# ---------------------------------------------------------------------------
# Slug
# ---------------------------------------------------------------------------


def sanitize_slug_component(value: str) -> str:
    return _NON_SLUG_RE.sub("-", value).strip("-")


def slug_components(workspace: Path, generic_parents: Iterable[str] = ()) -> tuple[str, str]:
    """Return sanitized ``(parent, project)`` for a workspace path."""
    denylist = GENERIC_PARENTS | frozenset(generic_parents)
    parts = [p for p in workspace.parts if p != workspace.anchor]
    project = parts[-1] if parts else ""
    parent = parts[-2] if len(parts) >= 2 else project

    if parent in denylist and len(parts) >= 3:
        ancestor = parts[-3]
        # A generic ancestor is no better than the generic parent we have
        if ancestor not in denylist:
            parent = ancestor

    return sanitize_slug_component(parent), sanitize_slug_component(project)


def generate_slug(workspace: Path, generic_parents: Iterable[str] = ()) -> str:
    parent, project = slug_components(workspace, generic_parents)
    if not project:
        return parent
    if not parent:
        return project
    if parent in project and len(parent) > 3:
        return project
    return f"{parent}-{project}"


# ---------------------------------------------------------------------------
# Hashes
# ---------------------------------------------------------------------------


def short_hash(value: str) -> str:
    """Short non-cryptographic digest; only guards against accidental reuse."""
    return hashlib.md5(value.encode(), usedforsecurity=False).hexdigest()[:HASH_WIDTH]


def workspace_hash(workspace: Path) -> str:
    return short_hash(str(workspace))


def normalize_volume_spec(spec: str, cwd: Path | None = None) -> str:
    """Expand ``~`` and relative sources in a ``SRC:DEST[:MODE]`` spec."""
    if ":" not in spec:
        return spec
    src, rest = spec.split(":", 1)
    src = os.path.expanduser(src)
    if not os.path.isabs(src):
        src = os.path.normpath(os.path.join(cwd or os.getcwd(), src))
    return f"{src}:{rest}"


def _canonical_volume_entry(spec: str, cwd: Path | None = None) -> str:
    src, _, rest = normalize_volume_spec(spec, cwd).partition(":")
    dest, _, mode = rest.partition(":")
    if os.path.exists(src):
        src = os.path.abspath(src)
    return f"{src}:{dest}:{mode or 'rw'}"


def volume_hash(volumes: Sequence[str], cwd: Path | None = None) -> str | None:
    """Digest over the sorted, normalized volume list; ``None`` when empty.

    Relative sources resolve against ``cwd`` (the workspace).
    """
    if not volumes:
        return None
    entries = sorted(_canonical_volume_entry(v, cwd) for v in volumes)
    return short_hash("|".join(entries))


def auth_suffix(auth: AuthContext | None) -> str | None:
    """Name component for non-default auth, folding in a custom credential path."""
    if auth is None or auth.is_default:
        return None
    if auth.credential_file:
        return f"{auth.method}-{short_hash(auth.credential_file)}"
    return auth.method


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


def resolve_identity(
    workspace: Path,
    *,
    prefix: str = "deva",
    volumes: Sequence[str] = (),
    auth: AuthContext | None = None,
    ephemeral: bool = False,
    pid: int | None = None,
    generic_parents: Iterable[str] = (),
) -> ContainerIdentity:
    """Derive the container identity for one invocation.

    ``workspace`` must already be validated (see :func:`validate_workspace`).
    """
    if ephemeral and pid is None:
        pid = os.getpid()
    return ContainerIdentity(
        prefix=prefix,
        slug=generate_slug(workspace, generic_parents),
        workspace=str(workspace),
        workspace_hash=workspace_hash(workspace),
        volume_hash=volume_hash(volumes, workspace),
        auth_suffix=auth_suffix(auth),
        ephemeral=ephemeral,
        agent=auth.agent_name if auth else "",
        pid=pid if ephemeral else None,
    )


def slug_name_pattern(prefix: str, slug: str) -> re.Pattern[str]:
    """Match names derived from ``slug`` (plain, hashed or ephemeral variants)."""
    return re.compile(rf"^{re.escape(prefix)}-{re.escape(slug)}(\.\.|-|$)")
