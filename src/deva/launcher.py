"""One launch, end to end.

workspace -> agent -> homes -> mounts -> identity -> image -> spec -> lifecycle

Identity and mount problems are raised before the engine is touched.
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from deva.agents import get_agent, get_agents
from deva.config import Settings
from deva.errors import IdentityError
from deva.homes import credential_roots, prepare_layout, resolve_layout
from deva.identity import (
    is_high_risk_workspace,
    normalize_volume_spec,
    resolve_identity,
    validate_workspace,
)
from deva.launch import LaunchSpec, build_launch_spec
from deva.lifecycle import ContainerLifecycle, LifecycleResult
from deva.logger import logger
from deva.mounts import compose_mounts
from deva.registry import SessionRegistry
from deva.runtime import ContainerEngine, resolve_image
from deva.types import AuthContext, ContainerIdentity


@dataclass
class LaunchOptions:
    agent: str | None = None
    agent_args: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    config_home: str | None = None
    ephemeral: bool = False
    dry_run: bool = False
    assume_yes: bool = False


@dataclass(frozen=True)
class PreparedLaunch:
    identity: ContainerIdentity
    auth: AuthContext
    spec: LaunchSpec


class Launcher:
    def __init__(
        self,
        settings: Settings,
        engine: ContainerEngine,
        *,
        environ: Mapping[str, str] | None = None,
        cwd: str | None = None,
        home: Path | None = None,
        input_fn: Callable[[str], str] = input,
        out: Callable[[str], None] = print,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.environ = os.environ if environ is None else environ
        self.cwd = cwd
        self.home = home or Path.home()
        self.input_fn = input_fn
        self.out = out

    # --- steps ---

    def _workspace(self, assume_yes: bool) -> Path:
        workspace = validate_workspace(self.cwd or os.getcwd())
        if is_high_risk_workspace(workspace, self.home) and not assume_yes:
            self.out("WARNING: Running in a high-risk directory!")
            self.out(f"Current directory: {workspace}")
            self.out("")
            self.out("deva will grant full access to this directory and all subdirectories.")
            if self.input_fn("Type 'yes' to continue: ").strip() != "yes":
                raise IdentityError(
                    f"refusing to launch in {workspace}",
                    hint="change to a specific project directory",
                )
        return workspace

    def _volumes(self, extra: list[str]) -> list[str]:
        cwd = Path(self.cwd) if self.cwd else None
        return [normalize_volume_spec(v, cwd) for v in [*self.settings.volumes, *extra]]

    def _user_env(self, extra: list[str]) -> list[str]:
        specs = list(self.settings.env)
        for spec in extra:
            if "=" in spec:
                specs.append(spec)
            elif value := self.environ.get(spec):
                specs.append(f"{spec}={value}")
            else:
                logger.warning("Environment variable not set; skipping", name=spec)
        return specs

    def prepare(self, opts: LaunchOptions) -> PreparedLaunch:
        """Resolve everything up to the launch spec; only the image lookup touches the engine."""
        s = self.settings
        workspace = self._workspace(opts.assume_yes)

        agents = get_agents()
        agent = get_agent(opts.agent or s.default_agent)
        command, auth = agent.prepare_launch(opts.agent_args, self.environ)

        layout = resolve_layout(opts.config_home or s.config_home, list(agents))
        prepare_layout(layout, agent, agents, autolink=not s.no_autolink, home=self.home)
        agent.prepare_host(auth, layout, self.home)

        volumes = self._volumes(opts.volumes)
        mounts = compose_mounts(
            agent,
            auth,
            credential_roots(layout, agent, agents, self.home),
            agents,
            volumes=volumes,
            home=self.home,
            environ=self.environ,
        )
        identity = resolve_identity(
            workspace,
            prefix=s.container_prefix,
            volumes=volumes,
            auth=auth,
            ephemeral=opts.ephemeral,
            generic_parents=s.extra_generic_parents,
        )

        if opts.dry_run:
            image = s.image_ref
        else:
            self.engine.ensure_running()
            image = resolve_image(self.engine, s.docker_image, s.image_tag, profile=s.profile)

        spec = build_launch_spec(
            name=identity.container_name,
            identity=identity,
            image=image,
            agent=agent,
            command=command,
            auth=auth,
            mounts=mounts,
            settings=s,
            user_env=self._user_env(opts.env),
            environ=self.environ,
        )
        return PreparedLaunch(identity, auth, spec)

    # --- output ---

    def _print_commands(self, spec: LaunchSpec) -> None:
        self.out(f"Container name: {spec.name}")
        if spec.ephemeral:
            self.out(shlex.join(["docker", *spec.run_args()]))
        else:
            self.out(shlex.join(["docker", *spec.create_args()]))
            self.out(shlex.join(["docker", *spec.exec_args()]))

    def _announce(self, result: LifecycleResult) -> None:
        match result.action:
            case "attach":
                self.out(f"Attaching to existing container: {result.name}")
            case "start":
                self.out(f"Started stopped container: {result.name}")
            case "create":
                self.out(f"Created persistent container: {result.name}")

    # --- entry point ---

    def run(self, opts: LaunchOptions) -> int:
        prepared = self.prepare(opts)
        spec = prepared.spec

        if opts.dry_run:
            self._print_commands(spec)
            return 0

        lifecycle = ContainerLifecycle(
            self.engine,
            SessionRegistry(self.settings.session_dir),
            attempts=self.settings.lifecycle.race_wait_attempts,
            interval=self.settings.lifecycle.race_wait_interval,
        )
        spec = lifecycle.claim_name(spec, prepared.identity)
        if spec.ephemeral:
            self.out(f"Launching {prepared.auth.agent_name} (ephemeral mode) via {spec.image}")
        return lifecycle.launch(spec, prepared.identity, prepared.auth, on_ready=self._announce)
