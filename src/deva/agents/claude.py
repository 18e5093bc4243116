"""Claude Code agent."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

import pluggy

from deva.agents.base import (
    AuthMethod,
    BaseAgent,
    HostMount,
    copilot_no_proxy,
    has_flag,
    require_env,
    require_github_token,
)
from deva.config import get_settings

hookimpl = pluggy.HookimplMarker("deva")

# Variables that would override whichever credential the method provides
_KEY_VARS = (
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",
    "CLAUDE_CODE_OAUTH_TOKEN",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "openai_base_url",
)
_AWS_VARS = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN", "AWS_REGION")

# Used when the copilot proxy's model list isn't available
COPILOT_MAIN_MODEL = "claude-sonnet-4"
COPILOT_FAST_MODEL = "o3-mini-2025-01-31"


class ClaudeAgent(BaseAgent):
    name = "claude"
    command = "claude"
    default_auth = "claude"
    home_entries = (".claude", ".claude.json")
    scaffold_files = (".claude.json",)
    config_home_files = (".claude.json",)
    methods = (
        AuthMethod(
            "claude",
            details="claude-oauth (~/.claude)",
            credential_files=(".credentials.json",),
            blocked_env=_KEY_VARS,
        ),
        AuthMethod("api-key", details="api-key (ANTHROPIC_API_KEY)", blocked_env=_KEY_VARS),
        AuthMethod("oat", details="oauth-token (CLAUDE_CODE_OAUTH_TOKEN)", blocked_env=_KEY_VARS),
        AuthMethod(
            "bedrock",
            details="aws-bedrock (~/.aws)",
            host_mounts=(HostMount(".aws", "/home/deva/.aws"),),
            blocked_env=_KEY_VARS,
        ),
        AuthMethod(
            "vertex",
            details="google-vertex (gcloud)",
            host_mounts=(HostMount(".config/gcloud", "/home/deva/.config/gcloud"),),
            blocked_env=_KEY_VARS,
        ),
        AuthMethod(
            "copilot",
            details="github-copilot",
            blocked_env=("ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "CLAUDE_CODE_OAUTH_TOKEN"),
        ),
        AuthMethod(
            "credentials-file",
            custom_file_target="/home/deva/.claude/.credentials.json",
            blocked_env=_KEY_VARS,
        ),
    )

    def build_argv(self, args: list[str], environ: Mapping[str, str]) -> list[str]:
        argv = [self.command]
        if not has_flag(args, "--dangerously-skip-permissions"):
            argv.append("--dangerously-skip-permissions")
        return argv + args

    def auth_env(
        self, method: AuthMethod, environ: Mapping[str, str]
    ) -> tuple[list[tuple[str, str]], str]:
        env: list[tuple[str, str]] = []
        details = method.details
        match method.name:
            case "api-key":
                key = require_env(environ, "ANTHROPIC_API_KEY", "api-key")
                env.append(("ANTHROPIC_API_KEY", key))
            case "oat":
                token = require_env(environ, "CLAUDE_CODE_OAUTH_TOKEN", "oat")
                env.append(("CLAUDE_CODE_OAUTH_TOKEN", token))
            case "bedrock":
                env.append(("CLAUDE_CODE_USE_BEDROCK", "1"))
                env.extend((k, environ[k]) for k in _AWS_VARS if environ.get(k))
            case "vertex":
                env.append(("CLAUDE_CODE_USE_VERTEX", "1"))
                adc = environ.get("GOOGLE_APPLICATION_CREDENTIALS")
                if adc and Path(adc).is_file():
                    env.append(("GOOGLE_APPLICATION_CREDENTIALS", adc))
            case "copilot":
                require_github_token(environ)
                copilot = get_settings().copilot
                env.append(("ANTHROPIC_BASE_URL", f"http://{copilot.host}:{copilot.port}"))
                env.append(("ANTHROPIC_API_KEY", "dummy"))
                model = environ.get("ANTHROPIC_MODEL") or COPILOT_MAIN_MODEL
                env.append(("ANTHROPIC_MODEL", model))
                env.append(
                    (
                        "ANTHROPIC_SMALL_FAST_MODEL",
                        environ.get("ANTHROPIC_SMALL_FAST_MODEL") or COPILOT_FAST_MODEL,
                    )
                )
                env.extend(copilot_no_proxy(environ, copilot.host))
                details = f"github-copilot (proxy port {copilot.port})"
        return env, details


class ClaudeAgentPlugin:
    @hookimpl
    def deva_agent(self) -> ClaudeAgent:
        return ClaudeAgent()
