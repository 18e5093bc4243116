"""Container lifecycle state machine.

Persistent mode::

    Unresolved ──> Attach ─────────────────────────┐
         │                                         │
         ├──────> Start ───────────────────────────┤
         │                                         ├──> Ready
         └──────> Create ──(name in use)──> RaceWait ──> Attach
                     │
                     └──(any other engine error)──> Failed

The container is created running a placeholder process; the agent runs
afterwards through ``exec``, so later invocations in the same workspace
reuse the container.  Ephemeral mode skips all of this: one ``run --rm``
whose name carries the invoking pid.

The only synchronization between concurrent invocations is the engine's
unique container names: exactly one create wins, the losers wait in
RaceWait for the winner's container to come up and attach to it.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from deva.errors import NameConflictError, RaceWaitTimeoutError
from deva.launch import LaunchSpec
from deva.logger import logger
from deva.registry import RegistryWrite, SessionRecord, SessionRegistry
from deva.runtime import ContainerEngine
from deva.types import AuthContext, ContainerIdentity

Action = Literal["attach", "start", "create"]


@dataclass
class LifecycleResult:
    spec: LaunchSpec
    action: Action
    transitions: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.spec.name


class ContainerLifecycle:
    def __init__(
        self,
        engine: ContainerEngine,
        registry: SessionRegistry,
        *,
        attempts: int = 20,
        interval: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.attempts = max(1, attempts)
        self.interval = interval
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Name ownership
    # ------------------------------------------------------------------

    def _owned_by(self, name: str, workspace_hash: str) -> bool:
        """Whether container ``name`` belongs to this workspace (or is gone)."""
        labels = self.engine.inspect_labels(name)
        if labels is None:
            return True
        owner = labels.get("deva.workspace_hash")
        # Containers created before labels existed are assumed to be ours
        return owner is None or owner == workspace_hash

    def claim_name(self, spec: LaunchSpec, identity: ContainerIdentity) -> LaunchSpec:
        """Pick the plain name, or the workspace-hashed one if another workspace holds it."""
        if identity.ephemeral:
            return spec.renamed(identity.container_name)

        plain = identity.container_name
        hashed = identity.disambiguated_name
        if self.engine.find_any(hashed) is not None:
            return spec.renamed(hashed)
        if self.engine.find_any(plain) is None or self._owned_by(plain, identity.workspace_hash):
            return spec.renamed(plain)

        logger.info("Container name owned by another workspace", name=plain, using=hashed)
        return spec.renamed(hashed)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _race_wait(self, name: str) -> None:
        for attempt in range(self.attempts):
            if self.engine.find_running(name) is not None:
                logger.debug("Container ready after race wait", container=name, attempt=attempt)
                return
            self._sleep(self.interval)
        raise RaceWaitTimeoutError(name, self.attempts, self.interval)

    def ensure_container(
        self, spec: LaunchSpec, identity: ContainerIdentity, *, _retried: bool = False
    ) -> LifecycleResult:
        """Make sure the persistent container for ``spec`` exists and is running."""
        name = spec.name
        transitions = ["Unresolved"]

        if self.engine.find_running(name) is not None:
            transitions += ["Attach", "Ready"]
            logger.info("Lifecycle transition", container=name, action="attach")
            return LifecycleResult(spec, "attach", transitions)

        if self.engine.find_any(name) is not None:
            self.engine.start(name)
            transitions += ["Start", "Ready"]
            logger.info("Lifecycle transition", container=name, action="start")
            return LifecycleResult(spec, "start", transitions)

        transitions.append("Create")
        try:
            self.engine.create(spec)
        except NameConflictError:
            transitions.append("RaceWait")
            logger.info("Container name in use, waiting for initialization", container=name)
            self._race_wait(name)

            # Another workspace may have won the race for the same plain name
            hashed = identity.disambiguated_name
            if (
                not _retried
                and name != hashed
                and not self._owned_by(name, identity.workspace_hash)
            ):
                logger.info("Raced with another workspace, retrying", container=name, using=hashed)
                retry = self.ensure_container(spec.renamed(hashed), identity, _retried=True)
                retry.transitions[:0] = transitions
                return retry

            transitions += ["Attach", "Ready"]
            logger.info("Lifecycle transition", container=name, action="attach", raced=True)
            return LifecycleResult(spec, "attach", transitions)

        transitions.append("Ready")
        logger.info("Lifecycle transition", container=name, action="create")
        return LifecycleResult(spec, "create", transitions)

    # ------------------------------------------------------------------
    # Registry side effects (logged, never acted on)
    # ------------------------------------------------------------------

    def _log_registry(self, result: RegistryWrite, op: str, container: str) -> None:
        if result.ok:
            logger.debug("Session record updated", op=op, container=container)
        else:
            logger.warning(
                "Session record not updated",
                op=op,
                container=container,
                path=str(result.path),
                err=result.error,
            )

    def _record(self, spec: LaunchSpec, identity: ContainerIdentity, auth: AuthContext) -> None:
        record = SessionRecord.new(
            container=spec.name,
            workspace=identity.workspace,
            workspace_hash=identity.workspace_hash,
            auth=auth,
            ephemeral=identity.ephemeral,
        )
        self._log_registry(self.registry.write(record), "write", spec.name)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def launch(
        self,
        spec: LaunchSpec,
        identity: ContainerIdentity,
        auth: AuthContext,
        *,
        on_ready: Callable[[LifecycleResult], None] | None = None,
    ) -> int:
        """Bring the container up and run the agent; returns its exit status."""
        if identity.ephemeral:
            return self.run_ephemeral(spec, identity, auth)

        result = self.ensure_container(spec, identity)
        if result.action in ("create", "start"):
            self._record(result.spec, identity, auth)
        else:
            self._log_registry(self.registry.touch(result.name), "touch", result.name)

        if on_ready is not None:
            on_ready(result)
        return self.engine.exec(result.spec)

    def run_ephemeral(
        self, spec: LaunchSpec, identity: ContainerIdentity, auth: AuthContext
    ) -> int:
        logger.info("Lifecycle transition", container=spec.name, action="ephemeral")
        self._record(spec, identity, auth)
        try:
            return self.engine.run_ephemeral(spec)
        finally:
            self._log_registry(self.registry.delete(spec.name), "delete", spec.name)
