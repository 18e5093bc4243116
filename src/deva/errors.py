"""Error taxonomy.

Every fatal error carries the phase it belongs to so the CLI can report a
single-line ``error: [<phase>] ...`` diagnostic.  Engine errors keep the
engine's own stderr text verbatim.
"""

from __future__ import annotations


class DevaError(Exception):
    """Base class for all fatal launcher errors."""

    phase = "launch"

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def diagnostic(self) -> str:
        return f"[{self.phase}] {self.message}"


class ConfigError(DevaError):
    phase = "config"


class IdentityError(DevaError):
    """Invalid workspace path (empty, relative, root)."""

    phase = "identity"


class MountError(DevaError):
    """Missing credential file or disallowed configuration root."""

    phase = "mount"


class AuthError(DevaError):
    """Auth method unsupported for the agent, or its credentials are missing."""

    phase = "auth"


class AgentNotFoundError(ConfigError):
    def __init__(self, name: str, available: list[str]) -> None:
        super().__init__(
            f"unknown agent '{name}'",
            hint=f"available agents: {' '.join(sorted(available))}",
        )
        self.name = name
        self.available = available


class EngineUnavailableError(DevaError):
    phase = "engine"


class ImageNotFoundError(DevaError):
    phase = "image"


class EngineError(DevaError):
    """A container engine call failed; ``stderr`` is the engine's own text."""

    phase = "create"

    def __init__(self, message: str, *, stderr: str = "", hint: str | None = None) -> None:
        detail = stderr.strip()
        super().__init__(f"{message}: {detail}" if detail else message, hint=hint)
        self.stderr = stderr


class NameConflictError(EngineError):
    """Create was rejected because the container name is already taken.

    This is the only engine failure that is recovered automatically.
    """


class StartError(EngineError):
    phase = "attach"


class RaceWaitTimeoutError(DevaError):
    phase = "attach"

    def __init__(self, container: str, attempts: int, interval: float) -> None:
        super().__init__(
            f"timed out waiting for container {container} "
            f"({attempts} checks, {attempts * interval:.1f}s)"
        )
        self.container = container
        self.attempts = attempts
