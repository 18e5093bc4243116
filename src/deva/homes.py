"""Config homes: where agent credentials and settings come from on the host.

Three layouts, picked once per launch:

- **config home** (``-c DIR``): DIR's entries map straight onto
  ``/home/deva``.
- **config root** (default ``$XDG_CONFIG_HOME/deva``, or ``-c DIR`` when DIR
  holds per-agent subdirectories): ``<root>/<agent>/`` entries map onto
  ``/home/deva`` for every known agent, so one container serves them all.
- **direct**: no root on disk; legacy ``~/.claude``, ``~/.codex`` ... are
  used in place.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from deva.agents.base import CONTAINER_HOME, BaseAgent
from deva.config import xdg_config_home
from deva.logger import logger
from deva.mounts import validate_config_root
from deva.types import CredentialRoot


@dataclass(frozen=True)
class HomeLayout:
    config_home: Path | None = None
    config_root: Path | None = None
    explicit: bool = False

    @property
    def mode(self) -> str:
        if self.config_home is not None:
            return "config-home"
        if self.config_root is not None and self.config_root.is_dir():
            return "config-root"
        return "direct"


def default_config_root() -> Path:
    return xdg_config_home() / "deva"


def resolve_layout(config_home: str | None, agent_names: list[str]) -> HomeLayout:
    """Decide between a config home and a config root.

    ``config_home`` is the ``-c`` value (already absolute) or ``None``.
    """
    if not config_home:
        return HomeLayout(config_root=default_config_root())

    path = validate_config_root(config_home)
    if any((path / name).is_dir() for name in agent_names):
        return HomeLayout(config_root=path, explicit=True)
    return HomeLayout(config_home=path, explicit=True)


# ---------------------------------------------------------------------------
# Autolink + scaffolding
# ---------------------------------------------------------------------------


def autolink_legacy(
    root: Path, agents: Mapping[str, BaseAgent], home: Path | None = None
) -> list[Path]:
    """Symlink legacy ``~/.<agent>`` state into ``<root>/<agent>/``.

    Existing entries (files, dirs or dangling links) are left alone.
    Returns the links created.
    """
    home = home or Path.home()
    root.mkdir(parents=True, exist_ok=True)
    created: list[Path] = []

    for name, agent in agents.items():
        agent_dir = root / name
        legacy = [home / entry for entry in agent.home_entries if (home / entry).exists()]
        if legacy:
            agent_dir.mkdir(parents=True, exist_ok=True)
        for source in legacy:
            link = agent_dir / source.name
            if link.exists() or link.is_symlink():
                continue
            link.symlink_to(source)
            created.append(link)
            logger.info("autolink", source=str(source), link=str(link))

        if agent_dir.is_dir():
            for filename in agent.scaffold_files:
                _scaffold_json(agent_dir / filename)
        for dirname in agent.scaffold_dirs:
            target = agent_dir / dirname
            if not (target.exists() or target.is_symlink()):
                target.mkdir(parents=True)
    return created


def _scaffold_json(path: Path, content: dict | None = None) -> None:
    if path.exists() or path.is_symlink():
        return
    path.write_text(json.dumps(content or {}) + "\n")
    logger.info("scaffold", path=str(path))


def scaffold_config_home(config_home: Path, agent: BaseAgent) -> None:
    config_home.mkdir(parents=True, exist_ok=True)
    for filename in agent.config_home_files:
        _scaffold_json(config_home / filename)


def scaffold_gemini_api_key(config_dir: Path) -> Path:
    """Make sure gemini's settings select API-key auth; returns the settings path."""
    config_dir.mkdir(parents=True, exist_ok=True)
    settings_file = config_dir / "settings.json"
    try:
        current = json.loads(settings_file.read_text()) if settings_file.is_file() else {}
    except (OSError, json.JSONDecodeError):
        current = {}
    if "selectedType" not in json.dumps(current):
        settings_file.write_text(
            json.dumps({"security": {"auth": {"selectedType": "gemini-api-key"}}}, indent=2)
            + "\n"
        )
        logger.info("Created gemini settings with API key auth", path=str(settings_file))
    return settings_file


def prepare_layout(
    layout: HomeLayout,
    agent: BaseAgent,
    agents: Mapping[str, BaseAgent],
    *,
    autolink: bool = True,
    home: Path | None = None,
) -> None:
    """Create whatever the chosen layout needs on disk before mounting."""
    if layout.config_home is not None:
        scaffold_config_home(layout.config_home, agent)
    elif layout.config_root is not None and autolink and not layout.explicit:
        autolink_legacy(layout.config_root, agents, home)


# ---------------------------------------------------------------------------
# Credential roots
# ---------------------------------------------------------------------------


def credential_roots(
    layout: HomeLayout,
    agent: BaseAgent,
    agents: Mapping[str, BaseAgent],
    home: Path | None = None,
) -> list[CredentialRoot]:
    """Enumerate the candidate credential locations for the composer."""
    home = home or Path.home()
    match layout.mode:
        case "config-home":
            assert layout.config_home is not None
            if not layout.config_home.is_dir():
                return []
            # Entries named after another agent's home carry that agent's exclusions
            owners = {
                entry: name for name, other in agents.items() for entry in other.home_entries
            }
            return [
                CredentialRoot(
                    owners.get(entry.name, agent.name), entry, f"{CONTAINER_HOME}/{entry.name}"
                )
                for entry in sorted(layout.config_home.iterdir(), key=lambda p: p.name)
            ]
        case "config-root":
            assert layout.config_root is not None
            return [
                CredentialRoot(name, layout.config_root / name, CONTAINER_HOME, contents=True)
                for name in agents
                if (layout.config_root / name).is_dir()
            ]
        case _:
            roots: list[CredentialRoot] = []
            for other in agents.values():
                roots.extend(r for r in other.credential_roots(home) if os.path.lexists(r.source))
            return roots


def gemini_config_dir(layout: HomeLayout, home: Path | None = None) -> Path:
    home = home or Path.home()
    if layout.mode == "config-root":
        assert layout.config_root is not None
        return layout.config_root / "gemini" / ".gemini"
    if layout.config_home is not None:
        return layout.config_home / ".gemini"
    return home / ".gemini"
