"""Google Gemini CLI agent."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

import pluggy

from deva.agents.base import AuthMethod, BaseAgent, HostMount, has_flag, require_env
from deva.homes import HomeLayout, gemini_config_dir, scaffold_gemini_api_key
from deva.types import AuthContext

hookimpl = pluggy.HookimplMarker("deva")

SERVICE_ACCOUNT_TARGET = "/home/deva/.config/gcloud/service-account-key.json"

_GOOGLE_VARS = ("GOOGLE_API_KEY", "GEMINI_API_KEY")
_OTHER_KEY_VARS = (*_GOOGLE_VARS, "ANTHROPIC_API_KEY", "OPENAI_API_KEY")


class GeminiAgent(BaseAgent):
    name = "gemini"
    command = "gemini"
    default_auth = "oauth"
    home_entries = (".gemini",)
    scaffold_dirs = (".gemini",)
    config_home_files = ("settings.json",)
    methods = (
        AuthMethod(
            "oauth",
            details="gemini-app-oauth (~/.gemini)",
            credential_files=(
                "oauth_creds.json",
                "google_accounts.json",
                "mcp-oauth-tokens-v2.json",
            ),
            blocked_env=(
                *_GOOGLE_VARS,
                "ANTHROPIC_API_KEY",
                "ANTHROPIC_BASE_URL",
                "OPENAI_API_KEY",
                "OPENAI_BASE_URL",
            ),
            aliases=("gemini-app-oauth",),
        ),
        AuthMethod(
            "api-key",
            details="api-key (GEMINI_API_KEY)",
            blocked_env=_GOOGLE_VARS,
            aliases=("gemini-api-key",),
        ),
        AuthMethod(
            "vertex",
            details="google-vertex (gcloud)",
            host_mounts=(HostMount(".config/gcloud", "/home/deva/.config/gcloud"),),
            blocked_env=_OTHER_KEY_VARS,
        ),
        AuthMethod(
            "compute-adc",
            details="compute-default-credentials (GCE metadata)",
            blocked_env=_OTHER_KEY_VARS,
        ),
        AuthMethod(
            "credentials-file",
            custom_file_target=SERVICE_ACCOUNT_TARGET,
            blocked_env=_OTHER_KEY_VARS,
        ),
    )

    def build_argv(self, args: list[str], environ: Mapping[str, str]) -> list[str]:
        argv = [self.command]
        if not has_flag(args, "--yolo", "-y"):
            argv.append("--yolo")
        return argv + args

    def auth_env(
        self, method: AuthMethod, environ: Mapping[str, str]
    ) -> tuple[list[tuple[str, str]], str]:
        env: list[tuple[str, str]] = []
        match method.name:
            case "api-key":
                env.append(("GEMINI_API_KEY", require_env(environ, "GEMINI_API_KEY", "api-key")))
            case "vertex":
                adc = environ.get("GOOGLE_APPLICATION_CREDENTIALS")
                if adc and Path(adc).is_file():
                    env.append(("GOOGLE_APPLICATION_CREDENTIALS", adc))
                for name in ("GOOGLE_CLOUD_PROJECT", "GOOGLE_CLOUD_LOCATION"):
                    if environ.get(name):
                        env.append((name, environ[name]))
            case "credentials-file":
                env.append(("GOOGLE_APPLICATION_CREDENTIALS", SERVICE_ACCOUNT_TARGET))
        return env, method.details

    def prepare_host(self, auth: AuthContext, layout: HomeLayout, home: Path) -> None:
        if auth.method == "api-key":
            scaffold_gemini_api_key(gemini_config_dir(layout, home))


class GeminiAgentPlugin:
    @hookimpl
    def deva_agent(self) -> GeminiAgent:
        return GeminiAgent()
