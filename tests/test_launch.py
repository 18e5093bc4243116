"""Tests for LaunchSpec assembly: env, labels, mounts and engine argv."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import make_settings

from deva.agents import get_agent
from deva.identity import resolve_identity
from deva.launch import (
    DOCKER_SOCKET,
    LaunchSpec,
    build_labels,
    build_launch_spec,
    detect_host_timezone,
    filter_user_env,
    translate_localhost,
)
from deva.types import Mount, MountPlan

WS = Path("/home/dev/work/myapp")
HOST_ENV = {"TZ": "Europe/Berlin", "LANG": "en_US.UTF-8"}


def _build(args=(), environ=None, *, settings=None, user_env=(), ephemeral=False, mounts=None):
    environ = dict(HOST_ENV if environ is None else environ)
    agent = get_agent("claude")
    command, auth = agent.prepare_launch(list(args), environ)
    identity = resolve_identity(WS, auth=auth, ephemeral=ephemeral, pid=42)
    return build_launch_spec(
        name=identity.container_name,
        identity=identity,
        image="ghcr.io/thevibeworks/deva:latest",
        agent=agent,
        command=command,
        auth=auth,
        mounts=mounts or MountPlan(),
        settings=settings or make_settings(),
        user_env=user_env,
        environ=environ,
    )


@pytest.fixture(autouse=True)
def _no_docker_socket():
    with patch("deva.launch._docker_socket_available", return_value=False):
        yield


class TestEnvironment:
    def test_introspection_variables(self):
        spec = _build()
        assert spec.env_value("DEVA_CONTAINER_NAME") == "deva-work-myapp"
        assert spec.env_value("DEVA_AGENT") == "claude"
        assert spec.env_value("DEVA_WORKSPACE") == str(WS)
        assert spec.env_value("DEVA_EPHEMERAL") == "false"
        assert spec.env_value("DEVA_AUTH_METHOD") == "claude"
        assert spec.env_value("DEVA_AUTH_DETAILS") == "claude-oauth (~/.claude)"
        assert spec.env_value("WORKDIR") == str(WS)

    def test_host_passthrough(self):
        spec = _build()
        assert spec.env_value("TZ") == "Europe/Berlin"
        assert spec.env_value("LANG") == "en_US.UTF-8"

    def test_proxy_localhost_translated(self):
        spec = _build(environ={"TZ": "UTC", "http_proxy": "http://127.0.0.1:3128"})
        assert spec.env_value("HTTP_PROXY") == "http://host.docker.internal:3128"

    def test_agent_env_overrides_host_value(self):
        spec = _build(
            ["--auth-with", "copilot"],
            environ={"TZ": "UTC", "GH_TOKEN": "gho_x", "NO_PROXY": "corp.internal"},
        )
        no_proxy = [v for k, v in spec.env if k == "NO_PROXY"]
        assert len(no_proxy) == 1
        assert no_proxy[0].startswith("corp.internal,host.docker.internal")

    def test_user_env_that_overrides_credentials_dropped(self):
        spec = _build(user_env=["ANTHROPIC_API_KEY=sk-user", "FOO=bar"])
        assert spec.env_value("ANTHROPIC_API_KEY") is None
        assert spec.env_value("FOO") == "bar"

    def test_user_env_allowed_for_unrelated_method(self):
        spec = _build(
            ["--auth-with", "copilot"],
            environ={"TZ": "UTC", "GH_TOKEN": "gho_x"},
            user_env=["OPENAI_API_KEY=sk-o"],
        )
        assert spec.env_value("OPENAI_API_KEY") == "sk-o"

    def test_host_openai_key_filtered_like_user_env(self):
        spec = _build(environ={"TZ": "UTC", "OPENAI_API_KEY": "sk-host"})
        assert spec.env_value("OPENAI_API_KEY") is None

    def test_filter_user_env_dedupes(self):
        assert filter_user_env(["A=1", "A=2", "B"], [], set()) == [("A", "1"), ("B", "")]
        assert filter_user_env(["A=1"], [], {"A"}) == []


class TestLabels:
    def test_default_labels(self):
        labels = dict(_build().labels)
        assert labels["deva.slug"] == "work-myapp"
        assert labels["deva.workspace"] == str(WS)
        assert labels["deva.agent"] == "claude"
        assert labels["deva.ephemeral"] == "false"
        assert "deva.auth" not in labels
        assert "deva.volhash" not in labels

    def test_non_default_auth_and_volumes_labeled(self):
        command, auth = get_agent("claude").prepare_launch(
            ["--auth-with", "api-key"], {"ANTHROPIC_API_KEY": "k"}
        )
        identity = resolve_identity(WS, volumes=["/srv:/srv"], auth=auth)
        labels = dict(build_labels(identity, auth))
        assert labels["deva.auth"] == "api-key"
        assert labels["deva.volhash"] == identity.volume_hash
        assert labels["deva.workspace_hash"] == identity.workspace_hash


class TestArgs:
    def test_create_args_run_placeholder(self):
        args = _build().create_args()
        assert args[:2] == ["run", "-d"]
        assert args[-4:] == ["ghcr.io/thevibeworks/deva:latest", "tail", "-f", "/dev/null"]
        assert args[args.index("--name") + 1] == "deva-work-myapp"
        assert f"{WS}:{WS}" in args

    def test_exec_args_use_entrypoint(self):
        assert _build().exec_args() == [
            "exec",
            "-it",
            "deva-work-myapp",
            "/usr/local/bin/docker-entrypoint.sh",
            "claude",
            "--dangerously-skip-permissions",
        ]

    def test_run_args_for_ephemeral(self):
        spec = _build(ephemeral=True)
        args = spec.run_args()
        assert args[:3] == ["run", "--rm", "-it"]
        assert args[-2:] == ["claude", "--dangerously-skip-permissions"]
        assert spec.name == "deva-work-myapp-claude-42"

    def test_mounts_rendered(self):
        spec = _build(mounts=MountPlan((Mount("/a", "/b", "ro"),)))
        args = spec.create_args()
        assert args[args.index("/a:/b:ro") - 1] == "-v"

    def test_host_net(self):
        assert "--net" in _build(settings=make_settings(host_net=True)).create_args()

    def test_docker_socket_mounted_unless_disabled(self):
        with patch("deva.launch._docker_socket_available", return_value=True):
            spec = _build()
            assert DOCKER_SOCKET in spec.mounts.sources()
            spec = _build(settings=make_settings(no_docker=True))
            assert DOCKER_SOCKET not in spec.mounts.sources()

    def test_renamed_updates_container_env(self):
        spec = _build().renamed("deva-other")
        assert spec.name == "deva-other"
        assert spec.env_value("DEVA_CONTAINER_NAME") == "deva-other"

    def test_spec_is_immutable(self):
        spec = _build()
        with pytest.raises(AttributeError):
            spec.name = "x"  # type: ignore[misc]
        assert isinstance(spec, LaunchSpec)


class TestHelpers:
    def test_translate_localhost(self):
        assert translate_localhost("http://localhost:8080") == "http://host.docker.internal:8080"

    def test_detect_host_timezone(self, tmp_path):
        zoneinfo = tmp_path / "usr" / "share" / "zoneinfo" / "Asia"
        zoneinfo.mkdir(parents=True)
        (zoneinfo / "Tokyo").write_text("")
        link = tmp_path / "localtime"
        link.symlink_to(zoneinfo / "Tokyo")
        assert detect_host_timezone(link) == "Asia/Tokyo"

    def test_detect_host_timezone_missing(self, tmp_path):
        assert detect_host_timezone(tmp_path / "nope") is None
