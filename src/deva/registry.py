"""Session registry: one JSON record per deva-managed container.

The registry is best-effort.  Write operations never raise; they return a
:class:`RegistryWrite` that callers log and otherwise ignore, so an
unwritable session directory never blocks a launch.  Records are written
to a per-process temp file and renamed into place, so readers see either
the old record or the new one.

Listing reconciles records against the engine: a record whose container
is gone reads as ``removed`` and is eligible for :meth:`SessionRegistry.prune_stale`.
"""

from __future__ import annotations

import contextlib
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from deva.logger import logger
from deva.runtime import ContainerEngine
from deva.types import AuthContext, SessionStatus


def utc_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).strftime("%Y-%m-%dT%H:%M:%SZ")


class SessionAuth(BaseModel):
    model_config = ConfigDict(extra="ignore")

    method: str = "default"
    details: str = ""
    credential_file: str | None = None


class SessionRecord(BaseModel):
    """Flat JSON record; every field but ``container`` may be missing on disk."""

    model_config = ConfigDict(extra="ignore")

    container: str
    agent: str = ""
    workspace: str = ""
    workspace_hash: str = ""
    auth: SessionAuth = SessionAuth()
    ephemeral: bool = False
    started_at: str = ""
    last_seen: str = ""
    status: SessionStatus = "running"
    pid: int | None = None

    @classmethod
    def new(
        cls,
        *,
        container: str,
        workspace: str,
        workspace_hash: str,
        auth: AuthContext,
        ephemeral: bool,
        pid: int | None = None,
        now: datetime | None = None,
    ) -> SessionRecord:
        ts = utc_timestamp(now)
        return cls(
            container=container,
            agent=auth.agent_name,
            workspace=workspace,
            workspace_hash=workspace_hash,
            auth=SessionAuth(**auth.to_dict()),
            ephemeral=ephemeral,
            started_at=ts,
            last_seen=ts,
            status="running",
            pid=os.getpid() if pid is None else pid,
        )

    def to_json(self) -> str:
        data = self.model_dump()
        if data["auth"]["credential_file"] is None:
            del data["auth"]["credential_file"]
        return json.dumps(data, indent=2) + "\n"


@dataclass(frozen=True)
class RegistryWrite:
    """Outcome of a registry write. Informational only."""

    ok: bool
    path: Path
    error: str | None = None


class SessionRegistry:
    def __init__(self, session_dir: Path) -> None:
        self.session_dir = session_dir

    def path_for(self, container: str) -> Path:
        return self.session_dir / f"{container}.json"

    # --- writes (never raise) ---

    def _write_atomic(self, path: Path, content: str) -> RegistryWrite:
        tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(content)
            os.replace(tmp, path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            return RegistryWrite(False, path, str(exc))
        return RegistryWrite(True, path)

    def write(self, record: SessionRecord) -> RegistryWrite:
        return self._write_atomic(self.path_for(record.container), record.to_json())

    def touch(self, container: str, now: datetime | None = None) -> RegistryWrite:
        """Refresh ``last_seen`` on an existing record; a missing record is left missing."""
        path = self.path_for(container)
        record = self.read(container)
        if record is None:
            return RegistryWrite(False, path, "no session record")
        updated = record.model_copy(update={"last_seen": utc_timestamp(now), "status": "running"})
        return self._write_atomic(path, updated.to_json())

    def delete(self, container: str) -> RegistryWrite:
        path = self.path_for(container)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            return RegistryWrite(False, path, str(exc))
        return RegistryWrite(True, path)

    # --- reads ---

    def read(self, container: str) -> SessionRecord | None:
        return self._load(self.path_for(container))

    def _load(self, path: Path) -> SessionRecord | None:
        try:
            return SessionRecord.model_validate_json(path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            logger.warning("Unreadable session record", path=str(path), err=str(exc))
            return None

    def records(self) -> list[SessionRecord]:
        if not self.session_dir.is_dir():
            return []
        records = []
        for path in sorted(self.session_dir.glob("*.json")):
            record = self._load(path)
            if record is not None:
                records.append(record)
        return records

    # --- reconciliation ---

    def list_sessions(
        self, engine: ContainerEngine, *, workspace_hash: str | None = None
    ) -> list[SessionRecord]:
        """Records with ``status`` reconciled against the engine's live containers."""
        records = self.records()
        if workspace_hash is not None:
            records = [r for r in records if r.workspace_hash == workspace_hash]
        if not records:
            return []

        running = {c.name for c in engine.list_containers()}
        existing = {c.name for c in engine.list_containers(all=True)}
        reconciled = []
        for record in records:
            if record.container in running:
                status: SessionStatus = "running"
            elif record.container in existing:
                status = "stopped"
            else:
                status = "removed"
            reconciled.append(record.model_copy(update={"status": status}))
        return reconciled

    def prune_stale(self, engine: ContainerEngine) -> list[str]:
        """Delete records whose container no longer exists; returns their names."""
        pruned = []
        for record in self.list_sessions(engine):
            if record.status != "removed":
                continue
            result = self.delete(record.container)
            if result.ok:
                pruned.append(record.container)
            else:
                logger.warning(
                    "Failed to prune session record", path=str(result.path), err=result.error
                )
        return pruned
