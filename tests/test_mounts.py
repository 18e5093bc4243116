"""Tests for credential-aware mount composition.

The property that matters most: a credential file belonging to an
inactive auth method is never mounted, neither directly nor through a
parent directory mount.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from deva.agents import get_agents
from deva.errors import MountError
from deva.homes import HomeLayout, credential_roots
from deva.mounts import (
    compose_credential_mounts,
    compose_entry,
    compose_mounts,
    custom_credential_mount,
    exclusions_for,
    parse_volume,
    user_volume_mounts,
    validate_config_root,
)
from deva.types import AuthContext, CredentialRoot, Mount


def _auth(agent: str, method: str, default: str, credential_file: str | None = None):
    return AuthContext(
        agent_name=agent,
        method=method,
        credential_file=credential_file,
        default_method=default,
    )


def _claude_auth(method: str = "claude", credential_file: str | None = None) -> AuthContext:
    return _auth("claude", method, "claude", credential_file)


@pytest.fixture
def config_root(tmp_path) -> Path:
    """A config root holding claude and codex state, credentials included."""
    root = tmp_path / "deva"
    claude = root / "claude" / ".claude"
    claude.mkdir(parents=True)
    (claude / ".credentials.json").write_text("{}")
    (claude / "settings.json").write_text("{}")
    (claude / "projects").mkdir()
    (root / "claude" / ".claude.json").write_text("{}")

    codex = root / "codex" / ".codex"
    codex.mkdir(parents=True)
    (codex / "auth.json").write_text("{}")
    (codex / "config.toml").write_text("")
    (root / "_shared").mkdir()
    return root


def _roots(config_root: Path, agent: str = "claude"):
    agents = get_agents()
    layout = HomeLayout(config_root=config_root)
    return credential_roots(layout, agents[agent], agents)


def _assert_no_excluded(mounts, excluded_paths):
    """No mount source equals an excluded path or is a directory containing one."""
    for mount in mounts:
        source = Path(mount.source)
        for path in excluded_paths:
            assert source != path
            assert source != path.parent, f"{source} would expose {path.name}"


# ---------------------------------------------------------------------------
# Config root validation
# ---------------------------------------------------------------------------


class TestValidateConfigRoot:
    HOME = Path("/home/dev")
    XDG = Path("/home/dev/.config")

    def _validate(self, path):
        return validate_config_root(path, home=self.HOME, xdg_config=self.XDG)

    def test_accepts_dir_under_home(self):
        assert self._validate("/home/dev/.config/deva") == Path("/home/dev/.config/deva")

    def test_accepts_tmp_scratch_prefix(self):
        assert self._validate("/tmp/deva-test/root") == Path("/tmp/deva-test/root")

    def test_rejects_relative(self):
        with pytest.raises(MountError, match="absolute"):
            self._validate("config/deva")

    def test_rejects_traversal(self):
        with pytest.raises(MountError, match="invalid path"):
            self._validate("/home/dev/../../etc")

    def test_rejects_double_slash(self):
        with pytest.raises(MountError):
            self._validate("/home/dev//deva")

    def test_rejects_outside_allowed_bases(self):
        with pytest.raises(MountError) as exc_info:
            self._validate("/etc/deva")
        assert exc_info.value.phase == "mount"

    def test_rejects_other_tmp_dirs(self):
        with pytest.raises(MountError):
            self._validate("/tmp/other")

    def test_rejects_home_itself(self):
        with pytest.raises(MountError):
            self._validate("/home/dev")


# ---------------------------------------------------------------------------
# Exclusion tables
# ---------------------------------------------------------------------------


class TestExclusionsFor:
    def test_active_agent_excludes_other_methods_files(self):
        table = exclusions_for(get_agents(), _claude_auth("api-key"))
        assert table["claude"] == frozenset({".credentials.json"})

    def test_inactive_agents_exclude_all_credentials(self):
        table = exclusions_for(get_agents(), _claude_auth("api-key"))
        assert "auth.json" in table["codex"]
        assert "oauth_creds.json" in table["gemini"]


# ---------------------------------------------------------------------------
# Walking
# ---------------------------------------------------------------------------


class TestComposeEntry:
    def test_plain_directory_mounted_whole(self, tmp_path):
        src = tmp_path / "dir"
        src.mkdir()
        (src / "a.txt").write_text("")
        mounts = compose_entry(src, "/home/deva/dir", frozenset({"secret.json"}))
        assert mounts == [Mount(str(src), "/home/deva/dir")]

    def test_directory_with_excluded_file_split(self, tmp_path):
        src = tmp_path / "dir"
        src.mkdir()
        (src / "a.txt").write_text("")
        (src / "secret.json").write_text("")
        mounts = compose_entry(src, "/home/deva/dir", frozenset({"secret.json"}))
        assert mounts == [Mount(str(src / "a.txt"), "/home/deva/dir/a.txt")]

    def test_excluded_file_itself_skipped(self, tmp_path):
        src = tmp_path / "secret.json"
        src.write_text("")
        assert compose_entry(src, "/home/deva/secret.json", frozenset({"secret.json"})) == []


class TestComposeCredentialMounts:
    def test_default_auth_mounts_agent_dirs_wholesale(self, config_root):
        mounts = compose_credential_mounts(
            _roots(config_root), get_agents(), _claude_auth()
        )
        sources = {m.source for m in mounts}
        assert str(config_root / "claude" / ".claude") in sources
        assert str(config_root / "codex" / ".codex") in sources

    def test_shared_dir_never_mounted(self, config_root):
        mounts = compose_credential_mounts(_roots(config_root), get_agents(), _claude_auth())
        assert all(
            Path(m.source).relative_to(config_root).parts[0] != "_shared" for m in mounts
        )

    def test_api_key_hides_oauth_session(self, config_root):
        mounts = compose_credential_mounts(
            _roots(config_root), get_agents(), _claude_auth("api-key")
        )
        claude_dir = config_root / "claude" / ".claude"
        _assert_no_excluded(mounts, [claude_dir / ".credentials.json"])

        sources = {m.source for m in mounts}
        assert str(claude_dir / "settings.json") in sources
        assert str(claude_dir / "projects") in sources
        assert str(config_root / "claude" / ".claude.json") in sources

    def test_api_key_keeps_destinations_under_container_home(self, config_root):
        mounts = compose_credential_mounts(
            _roots(config_root), get_agents(), _claude_auth("api-key")
        )
        dests = {m.destination for m in mounts}
        assert "/home/deva/.claude/settings.json" in dests
        assert "/home/deva/.claude/.credentials.json" not in dests

    def test_non_default_auth_hides_inactive_agent_credentials(self, config_root):
        mounts = compose_credential_mounts(
            _roots(config_root), get_agents(), _claude_auth("api-key")
        )
        codex_dir = config_root / "codex" / ".codex"
        _assert_no_excluded(mounts, [codex_dir / "auth.json"])
        assert str(codex_dir / "config.toml") in {m.source for m in mounts}

    def test_config_home_hides_inactive_agent_credentials(self, home):
        config_home = home / "deva-home"
        (config_home / ".claude").mkdir(parents=True)
        (config_home / ".claude" / ".credentials.json").write_text("{}")
        (config_home / ".claude" / "settings.json").write_text("{}")
        (config_home / ".codex").mkdir()
        (config_home / ".codex" / "auth.json").write_text("{}")
        (config_home / ".codex" / "config.toml").write_text("")
        agents = get_agents()
        roots = credential_roots(HomeLayout(config_home=config_home), agents["claude"], agents)

        mounts = compose_credential_mounts(roots, agents, _claude_auth("api-key"))

        _assert_no_excluded(
            mounts,
            [
                config_home / ".claude" / ".credentials.json",
                config_home / ".codex" / "auth.json",
            ],
        )
        assert {m.destination for m in mounts} == {
            "/home/deva/.claude/settings.json",
            "/home/deva/.codex/config.toml",
        }

    def test_config_home_default_auth_mounts_entries_wholesale(self, home):
        config_home = home / "deva-home"
        (config_home / ".codex").mkdir(parents=True)
        (config_home / ".codex" / "auth.json").write_text("{}")
        agents = get_agents()
        roots = credential_roots(HomeLayout(config_home=config_home), agents["codex"], agents)
        codex = agents["codex"]
        auth = _auth("codex", codex.default_auth, codex.default_auth)

        mounts = compose_credential_mounts(roots, agents, auth)

        assert mounts == [Mount(str(config_home / ".codex"), "/home/deva/.codex")]

    def test_direct_layout_uses_legacy_home_entries(self, home):
        (home / ".claude").mkdir()
        (home / ".claude" / ".credentials.json").write_text("{}")
        (home / ".claude" / "settings.json").write_text("{}")
        agents = get_agents()
        roots = credential_roots(HomeLayout(), agents["claude"], agents, home)

        mounts = compose_credential_mounts(roots, agents, _claude_auth("api-key"))
        assert mounts == [
            Mount(str(home / ".claude" / "settings.json"), "/home/deva/.claude/settings.json")
        ]

    def test_missing_root_ignored(self, tmp_path):
        root = CredentialRoot("claude", tmp_path / "nope", "/home/deva/.claude")
        assert compose_credential_mounts([root], get_agents(), _claude_auth()) == []


# ---------------------------------------------------------------------------
# Custom credential files
# ---------------------------------------------------------------------------


class TestCustomCredentialMount:
    def test_missing_file_fails_fast(self, tmp_path):
        method = get_agents()["claude"].auth_method("credentials-file")
        auth = _claude_auth("credentials-file", str(tmp_path / "missing.json"))
        with pytest.raises(MountError, match="not found"):
            custom_credential_mount(auth, method)

    def test_mounted_at_method_target(self, tmp_path):
        creds = tmp_path / "creds.json"
        creds.write_text("{}")
        method = get_agents()["claude"].auth_method("credentials-file")
        mount = custom_credential_mount(_claude_auth("credentials-file", str(creds)), method)
        assert mount == Mount(str(creds), "/home/deva/.claude/.credentials.json", "rw")

    def test_gcloud_target_read_only(self, tmp_path):
        creds = tmp_path / "sa.json"
        creds.write_text("{}")
        method = get_agents()["gemini"].auth_method("credentials-file")
        auth = _auth("gemini", "credentials-file", "oauth", str(creds))
        assert custom_credential_mount(auth, method).mode == "ro"

    def test_compose_mounts_replaces_default_credentials(self, config_root, tmp_path):
        creds = tmp_path / "creds.json"
        creds.write_text("{}")
        agents = get_agents()
        plan = compose_mounts(
            agents["claude"],
            _claude_auth("credentials-file", str(creds)),
            _roots(config_root),
            agents,
            home=tmp_path,
            environ={},
        )
        target = [m for m in plan if m.destination == "/home/deva/.claude/.credentials.json"]
        assert target == [Mount(str(creds), "/home/deva/.claude/.credentials.json", "rw")]
        _assert_no_excluded(plan, [config_root / "claude" / ".claude" / ".credentials.json"])

    def test_compose_mounts_checks_file_before_anything_else(self, config_root, tmp_path):
        agents = get_agents()
        with pytest.raises(MountError):
            compose_mounts(
                agents["claude"],
                _claude_auth("credentials-file", str(tmp_path / "gone.json")),
                _roots(config_root),
                agents,
                home=tmp_path,
                environ={},
            )


# ---------------------------------------------------------------------------
# Host and user mounts
# ---------------------------------------------------------------------------


class TestHostAndUserMounts:
    def test_bedrock_mounts_aws_dir_read_only(self, tmp_path):
        (tmp_path / ".aws").mkdir()
        agents = get_agents()
        plan = compose_mounts(
            agents["claude"], _claude_auth("bedrock"), [], agents, home=tmp_path, environ={}
        )
        assert Mount(str(tmp_path / ".aws"), "/home/deva/.aws", "ro") in list(plan)

    def test_bedrock_without_aws_dir(self, tmp_path):
        agents = get_agents()
        plan = compose_mounts(
            agents["claude"], _claude_auth("bedrock"), [], agents, home=tmp_path, environ={}
        )
        assert len(plan) == 0

    def test_parse_volume(self):
        assert parse_volume("/a:/b:ro") == Mount("/a", "/b", "ro")
        assert parse_volume("/a:/b") == Mount("/a", "/b", "rw")

    def test_parse_volume_rejects_bad_spec(self):
        with pytest.raises(MountError):
            parse_volume("/only-source")

    def test_user_volumes_appended_last(self, tmp_path):
        agents = get_agents()
        plan = compose_mounts(
            agents["claude"],
            _claude_auth(),
            [],
            agents,
            volumes=["/srv/data:/data:ro"],
            home=tmp_path,
            environ={},
        )
        assert list(plan)[-1] == Mount("/srv/data", "/data", "ro")

    def test_root_destination_still_mounted(self):
        assert user_volume_mounts(["/a:/root/.ssh"]) == [Mount("/a", "/root/.ssh")]
