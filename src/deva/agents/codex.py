"""OpenAI Codex agent."""

from __future__ import annotations

from collections.abc import Mapping

import pluggy

from deva.agents.base import (
    AuthMethod,
    BaseAgent,
    copilot_no_proxy,
    has_flag,
    require_env,
    require_github_token,
)
from deva.config import get_settings

hookimpl = pluggy.HookimplMarker("deva")

DEFAULT_MODEL = "gpt-5-codex"
COPILOT_MODEL = "claude-sonnet-4"

_OPENAI_VARS = ("OPENAI_API_KEY", "OPENAI_BASE_URL", "openai_base_url")
_ALL_KEY_VARS = (*_OPENAI_VARS, "ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL")


def _has_model(args: list[str]) -> bool:
    return any(a in ("-m", "--model") or a.startswith(("-m", "--model=")) for a in args)


class CodexAgent(BaseAgent):
    name = "codex"
    command = "codex"
    default_auth = "chatgpt"
    home_entries = (".codex",)
    scaffold_dirs = (".codex",)
    # OAuth login callback
    ports = ("127.0.0.1:1455:1455",)
    methods = (
        AuthMethod(
            "chatgpt",
            details="chatgpt-oauth (~/.codex)",
            credential_files=("auth.json",),
            blocked_env=_OPENAI_VARS,
        ),
        AuthMethod("api-key", details="api-key (OPENAI_API_KEY)", blocked_env=_ALL_KEY_VARS),
        AuthMethod("copilot", details="github-copilot", blocked_env=_OPENAI_VARS),
        AuthMethod(
            "credentials-file",
            custom_file_target="/home/deva/.codex/auth.json",
            blocked_env=_ALL_KEY_VARS,
        ),
    )

    def build_argv(self, args: list[str], environ: Mapping[str, str]) -> list[str]:
        argv = [self.command]
        if not has_flag(args, "--dangerously-bypass-approvals-and-sandbox"):
            argv.append("--dangerously-bypass-approvals-and-sandbox")
        if not _has_model(args):
            argv.extend(["-m", environ.get("DEVA_DEFAULT_CODEX_MODEL") or DEFAULT_MODEL])
        return argv + args

    def auth_env(
        self, method: AuthMethod, environ: Mapping[str, str]
    ) -> tuple[list[tuple[str, str]], str]:
        env: list[tuple[str, str]] = []
        details = method.details
        match method.name:
            case "api-key":
                env.append(("OPENAI_API_KEY", require_env(environ, "OPENAI_API_KEY", "api-key")))
            case "copilot":
                require_github_token(environ)
                copilot = get_settings().copilot
                env.append(("OPENAI_BASE_URL", f"http://{copilot.host}:{copilot.port}"))
                env.append(("OPENAI_API_KEY", "dummy"))
                env.append(("OPENAI_MODEL", environ.get("OPENAI_MODEL") or COPILOT_MODEL))
                env.extend(copilot_no_proxy(environ, copilot.host))
                details = f"github-copilot (proxy port {copilot.port})"
        return env, details


class CodexAgentPlugin:
    @hookimpl
    def deva_agent(self) -> CodexAgent:
        return CodexAgent()
