"""Agent capability interface and shared auth handling.

An agent module turns raw post-dispatch arguments into a
:class:`~deva.types.LaunchCommand` plus the invocation's
:class:`~deva.types.AuthContext`.  Everything the launcher needs to know
about an auth method (which credential files it owns, which host
directories it needs, which user env vars would override it) lives in the
agent's :class:`AuthMethod` table, so the rest of the system never
inspects agent-specific flags.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from deva.errors import AuthError
from deva.types import AuthContext, CredentialRoot, LaunchCommand

if TYPE_CHECKING:
    from deva.homes import HomeLayout

CONTAINER_HOME = "/home/deva"


@dataclass(frozen=True)
class HostMount:
    """A host path an auth method needs, relative to ``$HOME`` unless absolute."""

    source: str
    destination: str
    mode: str = "ro"

    def resolve(self, home: Path) -> Path:
        return Path(self.source) if os.path.isabs(self.source) else home / self.source


@dataclass(frozen=True)
class AuthMethod:
    """One row of an agent's auth table.

    ``credential_files`` are file names inside the agent's credential roots
    that belong to this method.  A non-default method excludes every other
    method's credential files from its mounts.
    """

    name: str
    details: str = ""
    credential_files: tuple[str, ...] = ()
    # Where a user-supplied credential file is mounted (credentials-file)
    custom_file_target: str | None = None
    host_mounts: tuple[HostMount, ...] = ()
    # User env vars dropped so they can't override this method's credentials
    blocked_env: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()


@runtime_checkable
class AgentModule(Protocol):
    """Capability contract every agent implements."""

    name: str
    default_auth: str

    def prepare_launch(
        self, args: Sequence[str], environ: Mapping[str, str]
    ) -> tuple[LaunchCommand, AuthContext]: ...

    def auth_method(self, name: str) -> AuthMethod: ...

    def credential_roots(self, home: Path) -> list[CredentialRoot]: ...


@dataclass
class ParsedAuthArgs:
    method: str
    credential_file: str | None = None
    remaining: list[str] = field(default_factory=list)


class BaseAgent:
    """Shared behavior for the built-in agents.

    Subclasses set ``name``, ``default_auth``, ``command`` and ``methods`` and
    implement :meth:`build_argv` / :meth:`auth_env`.
    """

    name: str = ""
    command: str = ""
    default_auth: str = ""
    methods: tuple[AuthMethod, ...] = ()
    # Legacy state under $HOME, mounted at the same path under /home/deva
    home_entries: tuple[str, ...] = ()
    # Created inside <config root>/<agent>/ when missing
    scaffold_files: tuple[str, ...] = ()
    scaffold_dirs: tuple[str, ...] = ()
    # Created inside a -c config home when missing
    config_home_files: tuple[str, ...] = ()
    ports: tuple[str, ...] = ()

    # --- auth table ---

    def supported_methods(self) -> list[str]:
        return [m.name for m in self.methods]

    def auth_method(self, name: str) -> AuthMethod:
        for method in self.methods:
            if name == method.name or name in method.aliases:
                return method
        raise AuthError(
            f"{self.name} agent doesn't support auth method '{name}'",
            hint=f"Supported: {', '.join(self.supported_methods())}",
        )

    def excluded_files(self, method_name: str) -> frozenset[str]:
        """Credential files of every other method, minus the active method's own."""
        active = self.auth_method(method_name)
        others = {f for m in self.methods if m.name != active.name for f in m.credential_files}
        return frozenset(others - set(active.credential_files))

    def credential_roots(self, home: Path) -> list[CredentialRoot]:
        return [
            CredentialRoot(self.name, home / entry, f"{CONTAINER_HOME}/{entry}")
            for entry in self.home_entries
        ]

    # --- argument handling ---

    def parse_auth_args(
        self, args: Sequence[str], environ: Mapping[str, str]
    ) -> ParsedAuthArgs:
        """Consume ``--auth-with METHOD`` and ``--credentials-file PATH``."""
        method: str | None = None
        credential_file: str | None = None
        remaining: list[str] = []
        i = 0
        while i < len(args):
            arg = args[i]
            if arg in ("--auth-with", "--credentials-file"):
                if i + 1 >= len(args):
                    raise AuthError(f"{arg} requires a value")
                value = args[i + 1]
                if arg == "--auth-with":
                    method = self.auth_method(value).name
                else:
                    credential_file = value
                i += 2
                continue
            if arg.startswith("--auth-with="):
                method = self.auth_method(arg.split("=", 1)[1]).name
            elif arg.startswith("--credentials-file="):
                credential_file = arg.split("=", 1)[1]
            else:
                remaining.append(arg)
            i += 1

        if credential_file and method is None:
            method = self.auth_method("credentials-file").name
        if method == "credentials-file":
            credential_file = credential_file or environ.get("CUSTOM_CREDENTIALS_FILE") or None
        if method == "credentials-file" and not credential_file:
            raise AuthError(
                "credentials-file auth needs a credential file",
                hint="pass --credentials-file PATH or set CUSTOM_CREDENTIALS_FILE",
            )

        if method != "credentials-file":
            credential_file = None
        elif credential_file:
            credential_file = os.path.abspath(os.path.expanduser(credential_file))

        return ParsedAuthArgs(method or self.default_auth, credential_file, remaining)

    def build_argv(self, args: list[str], environ: Mapping[str, str]) -> list[str]:
        raise NotImplementedError

    def auth_env(
        self, method: AuthMethod, environ: Mapping[str, str]
    ) -> tuple[list[tuple[str, str]], str]:
        """Return ``(env pairs, details)`` for the active method."""
        return [], method.details

    def prepare_host(self, auth: AuthContext, layout: HomeLayout, home: Path) -> None:
        """Host-side setup the active method needs before mounting."""

    # --- entry point ---

    def prepare_launch(
        self, args: Sequence[str], environ: Mapping[str, str]
    ) -> tuple[LaunchCommand, AuthContext]:
        parsed = self.parse_auth_args(args, environ)
        method = self.auth_method(parsed.method)
        env, details = self.auth_env(method, environ)
        if method.name == "credentials-file" and parsed.credential_file:
            details = f"credentials-file ({parsed.credential_file})"
        auth = AuthContext(
            agent_name=self.name,
            method=method.name,
            details=details,
            credential_file=parsed.credential_file,
            default_method=self.default_auth,
        )
        command = LaunchCommand(
            argv=tuple(self.build_argv(parsed.remaining, environ)),
            env=tuple(env),
            ports=self.ports,
        )
        return command, auth


# ---------------------------------------------------------------------------
# Shared credential checks
# ---------------------------------------------------------------------------


def require_env(environ: Mapping[str, str], name: str, method: str) -> str:
    value = environ.get(name)
    if not value:
        raise AuthError(
            f"{name} not set for --auth-with {method}",
            hint=f"Set: export {name}=...",
        )
    return value


def has_github_token(environ: Mapping[str, str], home: Path | None = None) -> bool:
    home = home or Path.home()
    token_file = home / ".local" / "share" / "copilot-api" / "github_token"
    return token_file.is_file() or bool(environ.get("GH_TOKEN") or environ.get("GITHUB_TOKEN"))


def require_github_token(environ: Mapping[str, str]) -> None:
    if not has_github_token(environ):
        raise AuthError(
            "No GitHub token found for copilot auth",
            hint="Run: copilot-api auth, or set GH_TOKEN=$(gh auth token)",
        )


def copilot_no_proxy(environ: Mapping[str, str], proxy_host: str) -> list[tuple[str, str]]:
    hosts = f"{proxy_host},localhost,127.0.0.1"
    no_proxy = environ.get("NO_PROXY")
    no_grpc = environ.get("NO_GRPC_PROXY")
    return [
        ("NO_PROXY", f"{no_proxy},{hosts}" if no_proxy else hosts),
        ("no_grpc_proxy", f"{no_grpc},{hosts}" if no_grpc else hosts),
    ]


def has_flag(args: Sequence[str], *flags: str) -> bool:
    return any(a in flags or any(a.startswith(f"{f}=") for f in flags) for a in args)
