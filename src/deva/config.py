"""Centralized configuration: Pydantic BaseSettings with TOML sources.

Priority (highest wins): init args > env vars > TOML files.  TOML files are
deep-merged in order, so a project's ``.deva.toml`` overrides the user's
global ``config.toml``::

    $XDG_CONFIG_HOME/deva/config.toml
    ~/.deva.toml
    ./.deva.toml
    ./.deva.local.toml

Environment variables use the ``DEVA_`` prefix (``DEVA_DOCKER_IMAGE``,
``DEVA_DEFAULT_AGENT``, ...) and ``__`` for nested sections
(``DEVA_LIFECYCLE__RACE_WAIT_ATTEMPTS``).

Usage::

    from deva.config import get_settings

    s = get_settings()
    print(s.image_ref)
"""

from __future__ import annotations

import os
import re
from functools import cached_property
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

PROFILE_TAGS = {"base": "latest", "rust": "rust"}

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")
_CMD_SUBST_RE = re.compile(r"\$\(([^)]*)\)")


# ---------------------------------------------------------------------------
# Value expansion (shared by config files and CLI flags)
# ---------------------------------------------------------------------------


def xdg_config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")


def is_valid_env_name(name: str) -> bool:
    return bool(_ENV_NAME_RE.match(name))


def check_config_value(key: str, value: str) -> None:
    """Reject shell injection in config values.

    Backticks are never allowed and ``$(...)`` is only allowed as ``$(pwd)``.
    """
    if "`" in value:
        raise ValueError(f"Security violation in {key}={value} (backticks not allowed)")
    for cmd in _CMD_SUBST_RE.findall(value):
        if cmd != "pwd":
            raise ValueError(f"Security violation in {key}={value} (only $(pwd) allowed)")


def expand_config_value(value: str, environ: dict[str, str] | None = None) -> str:
    """Expand ``~``, ``$(pwd)``, ``$PWD`` and ``${VAR:-default}`` references."""
    env = os.environ if environ is None else environ
    value = value.replace('"', "")
    cwd = os.getcwd()
    if value.startswith("~"):
        value = str(Path.home()) + value[1:]
    value = value.replace("$(pwd)", cwd).replace("$PWD", cwd)
    return _ENV_REF_RE.sub(lambda m: env.get(m.group(1)) or (m.group(2) or ""), value)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for config sub-models. Unknown keys are rejected."""

    model_config = {"extra": "forbid"}


class LifecycleConfig(_StrictModel):
    # 20 * 0.5s = 10s for a concurrent invocation to finish creating
    race_wait_attempts: int = 20
    race_wait_interval: float = 0.5

    @field_validator("race_wait_attempts")
    @classmethod
    def clamp_attempts(cls, v: int) -> int:
        return max(1, v)


class CopilotConfig(_StrictModel):
    """Where the (externally managed) Copilot API proxy listens."""

    host: str = "host.docker.internal"
    port: int = 4141


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------

_config_files_enabled = True


def config_file_paths() -> list[Path]:
    return [
        xdg_config_home() / "deva" / "config.toml",
        Path.home() / ".deva.toml",
        Path(".deva.toml"),
        Path(".deva.local.toml"),
    ]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DEVA_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    docker_image: str = "ghcr.io/thevibeworks/deva"
    docker_tag: str = "latest"
    profile: str | None = Field(
        default=None, validation_alias=AliasChoices("DEVA_PROFILE", "DEVA_IMAGE_PROFILE")
    )
    container_prefix: str = "deva"
    default_agent: str = "claude"

    # -c / --config-home equivalent
    config_home: str | None = Field(
        default=None, validation_alias=AliasChoices("DEVA_CONFIG_HOME_DIR")
    )
    # Base directory for deva's own state (session records)
    state_home: Path | None = Field(
        default=None, validation_alias=AliasChoices("DEVA_CONFIG_HOME")
    )

    no_autolink: bool = False
    no_docker: bool = False
    host_net: bool = False

    volumes: list[str] = []
    env: list[str] = []
    extra_generic_parents: list[str] = []

    lifecycle: LifecycleConfig = LifecycleConfig()
    copilot: CopilotConfig = CopilotConfig()

    @field_validator("profile")
    @classmethod
    def validate_profile(cls, v: str | None) -> str | None:
        if v in (None, ""):
            return None
        if v not in PROFILE_TAGS:
            raise ValueError(f"unknown profile '{v}'. Valid: {', '.join(PROFILE_TAGS)}")
        return v

    @field_validator("volumes")
    @classmethod
    def expand_volumes(cls, v: list[str]) -> list[str]:
        out = []
        for raw in v:
            check_config_value("VOLUME", raw)
            value = expand_config_value(raw)
            if ":" not in value:
                raise ValueError(f"Invalid volume specification: {raw}")
            out.append(value)
        return out

    @field_validator("env")
    @classmethod
    def expand_env(cls, v: list[str]) -> list[str]:
        out = []
        for raw in v:
            check_config_value("ENV", raw)
            if "=" in raw:
                name, _, data = raw.partition("=")
                if not is_valid_env_name(name):
                    raise ValueError(f"Invalid env name: {name}")
                out.append(f"{name}={expand_config_value(data)}")
            else:
                # Bare name, $NAME or ${NAME}: pull from the host when set
                name = raw.strip().removeprefix("$").strip("{}")
                if is_valid_env_name(name) and os.environ.get(name):
                    out.append(f"{name}={os.environ[name]}")
        return out

    @field_validator("config_home")
    @classmethod
    def expand_config_home(cls, v: str | None) -> str | None:
        if v is None:
            return None
        check_config_value("CONFIG_HOME", v)
        return os.path.abspath(expand_config_value(v))

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > TOML files."""
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings]
        if _config_files_enabled:
            sources.append(TomlConfigSettingsSource(settings_cls, toml_file=config_file_paths()))
        return tuple(sources)

    # --- Computed properties ---

    @cached_property
    def image_tag(self) -> str:
        # An explicit tag always wins over the profile's tag
        if "docker_tag" not in self.model_fields_set and self.profile:
            return PROFILE_TAGS[self.profile]
        return self.docker_tag

    @cached_property
    def image_ref(self) -> str:
        return f"{self.docker_image}:{self.image_tag}"

    @cached_property
    def deva_home(self) -> Path:
        return self.state_home or xdg_config_home() / "deva"

    @cached_property
    def session_dir(self) -> Path:
        return self.deva_home / "sessions"

    @cached_property
    def loaded_config_files(self) -> list[Path]:
        if not _config_files_enabled:
            return []
        return [p for p in config_file_paths() if p.is_file()]


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure(**overrides: object) -> Settings:
    """Rebuild the singleton with CLI overrides (highest priority)."""
    global _settings
    _settings = Settings(**overrides)
    return _settings


def reset_settings(*, use_config_files: bool = True) -> None:
    """Clear the cached singleton (``--no-config`` and tests)."""
    global _settings, _config_files_enabled
    _settings = None
    _config_files_enabled = use_config_files
