"""Tests for wsagent.devcontainer: default config, marker, build and fallback."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest

from wsagent.container import ContainerEngine
from wsagent.devcontainer import (
    BUILD_ERROR_MARKER,
    build_error_marker_exists,
    build_error_marker_path,
    default_config,
    devcontainer_up_args,
    ensure_devcontainer_ready,
    write_default_config,
)
from wsagent.errors import ContainerError, DevcontainerError, FallbackAbortedError

VOLUME = "sam-ws-ws-123"


@pytest.fixture
def cfg(agent_config):
    return replace(agent_config, container_user="node")


def _ups(fake_cli):
    return fake_cli.find("devcontainer", "up")


class TestDefaultConfig:
    def test_contents(self, agent_config):
        doc = default_config(agent_config)
        assert doc["name"] == "Default Workspace"
        assert doc["image"] == "mcr.microsoft.com/devcontainers/base:ubuntu"
        assert list(doc["features"]) == [
            "ghcr.io/devcontainers/features/git:1",
            "ghcr.io/devcontainers/features/github-cli:1",
        ]
        assert "remoteUser" not in doc
        assert "workspaceMount" not in doc

    def test_remote_user_and_volume(self, agent_config):
        cfg = replace(agent_config, default_devcontainer_remote_user="vscode")
        path = write_default_config(cfg, VOLUME)
        text = path.read_text()
        assert '"remoteUser": "vscode"' in text
        data = json.loads(text)
        assert data["workspaceMount"] == "source=sam-ws-ws-123,target=/workspaces,type=volume"
        assert data["workspaceFolder"] == "/workspaces/repo"

    def test_up_args(self):
        assert devcontainer_up_args("/workspace/repo") == ["up", "--workspace-folder", "/workspace/repo"]
        assert devcontainer_up_args("/w", "/etc/d.json", "ghcr.io/x/y:1") == [
            "up", "--workspace-folder", "/w",
            "--override-config", "/etc/d.json",
            "--additional-features", "ghcr.io/x/y:1",
        ]


class TestBuildWithRepoConfig:
    def test_success(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        devcontainer_world(cfg)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)

        assert result.container_id == "cid-1"
        assert result.container_user == "node"
        assert result.used_fallback is False
        assert _ups(fake_cli) == [("devcontainer", "up", "--workspace-folder", cfg.workspace_dir)]
        assert not build_error_marker_exists(cfg.workspace_dir)
        assert fake_cli.find("docker", "exec", "-u", "root", "cid-1", "chown") == [
            ("docker", "exec", "-u", "root", "cid-1", "chown", "-R", "1000:1000", "/workspaces/repo"),
        ]

    def test_success_clears_previous_marker(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        build_error_marker_path(repo_with_config).write_text("old failure\n")
        devcontainer_world(cfg)
        ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)
        assert not build_error_marker_exists(repo_with_config)

    def test_repo_config_skips_additional_features(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        cfg = replace(cfg, additional_features='{"ghcr.io/x/y:1":{}}')
        devcontainer_world(cfg)
        ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)
        assert "--additional-features" not in _ups(fake_cli)[0]

    def test_owner_already_matches(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        devcontainer_world(cfg)
        fake_cli.on("docker", "exec", "-u", "root", "cid-1", "stat", output="1000:1000\n")
        ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)
        assert fake_cli.find("docker", "exec", "-u", "root", "cid-1", "chown") == []


class TestFallback:
    def test_marker_written_before_fallback(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        world = devcontainer_world(cfg, repo_rc=1)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)

        assert result.used_fallback is True
        assert world.marker_at_fallback is True
        marker = build_error_marker_path(repo_with_config).read_text()
        assert "fatal: repo image broken" in marker

        ups = _ups(fake_cli)
        assert len(ups) == 2
        assert ups[1][-2:] == ("--override-config", cfg.default_devcontainer_config_path)
        assert fake_cli.index("docker", "rm", "-f", "stale-1") < fake_cli.calls.index(ups[1])
        assert json.loads(Path(cfg.default_devcontainer_config_path).read_text())["name"] == "Default Workspace"

    def test_fallback_injects_additional_features(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        cfg = replace(cfg, additional_features='{"ghcr.io/x/y:1":{}}')
        devcontainer_world(cfg, repo_rc=1)
        ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)
        assert _ups(fake_cli)[1][-2:] == ("--additional-features", '{"ghcr.io/x/y:1":{}}')

    def test_marker_write_failure_aborts(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        # A directory in the marker's place makes the write fail.
        build_error_marker_path(repo_with_config).mkdir()
        devcontainer_world(cfg, repo_rc=1)

        with pytest.raises(FallbackAbortedError, match="aborting fallback"):
            ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)
        assert len(_ups(fake_cli)) == 1
        assert fake_cli.find("docker", "rm") == []

    def test_both_attempts_fail(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        devcontainer_world(cfg, repo_rc=1, fallback_rc=1)
        with pytest.raises(DevcontainerError) as excinfo:
            ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)
        message = str(excinfo.value)
        assert "devcontainer fallback also failed" in message
        assert "(original error: fatal: repo image broken)" in message
        assert build_error_marker_exists(repo_with_config)


class TestNoRepoConfig:
    def test_default_config_is_not_a_fallback(self, fake_cli, devcontainer_world, ctx, cfg):
        (Path(cfg.workspace_dir) / ".git").mkdir(parents=True)
        devcontainer_world(cfg)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)

        assert result.used_fallback is False
        assert _ups(fake_cli) == [(
            "devcontainer", "up", "--workspace-folder", cfg.workspace_dir,
            "--override-config", cfg.default_devcontainer_config_path,
        )]
        assert not build_error_marker_exists(cfg.workspace_dir)

    def test_default_build_failure(self, fake_cli, devcontainer_world, ctx, cfg):
        Path(cfg.workspace_dir).mkdir(parents=True)
        devcontainer_world(cfg, fallback_rc=1)
        with pytest.raises(DevcontainerError, match="devcontainer up failed"):
            ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)


class TestExistingContainer:
    def test_running_container_is_reused(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        devcontainer_world(cfg, running=True)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)
        assert result.container_id == "cid-1"
        assert result.used_fallback is False
        assert fake_cli.find("devcontainer") == []

    def test_multiple_running(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        fake_cli.on("docker", "ps", "-q", output="a1\nb2\n")
        with pytest.raises(ContainerError, match="multiple running devcontainers"):
            ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)


class TestVolumeBuild:
    MERGED = {
        "image": "node:20",
        "customizations": {"vscode": {"extensions": ["x.y"]}},
        "postCreateCommands": ["npm ci", "npm run build"],
    }

    def _read_config(self, fake_cli, merged):
        payload = json.dumps({"outcome": "success", "mergedConfiguration": merged})
        fake_cli.on("devcontainer", "read-configuration", output="[log] resolving\n" + payload + "\n")

    def test_repo_config_repointed_at_volume(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        self._read_config(fake_cli, self.MERGED)
        world = devcontainer_world(cfg)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), cfg, volume=VOLUME)

        assert result.used_fallback is False
        [override] = world.override_configs
        assert override["workspaceMount"] == "source=sam-ws-ws-123,target=/workspaces,type=volume"
        assert override["workspaceFolder"] == "/workspaces/repo"
        assert override["postCreateCommand"] == "npm ci && npm run build"
        assert "postCreateCommands" not in override
        assert override["customizations"] == {"vscode": {"extensions": ["x.y"]}}
        assert not Path(world.override_paths[0]).exists()
        assert fake_cli.find("docker", "run", "--rm", "-v", f"{VOLUME}:/workspaces") == [(
            "docker", "run", "--rm", "-v", f"{VOLUME}:/workspaces", "busybox:latest",
            "sh", "-c", f"rm -f /workspaces/{BUILD_ERROR_MARKER}",
        )]

    def test_unusable_merged_config_falls_back(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        self._read_config(fake_cli, {"name": "Repo Config"})
        world = devcontainer_world(cfg)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), cfg, volume=VOLUME)

        assert result.used_fallback is True
        assert world.marker_at_fallback is True
        assert "missing image/dockerFile/dockerComposeFile" in build_error_marker_path(repo_with_config).read_text()

        i = fake_cli.index("docker", "run", "--rm", "-i")
        assert fake_cli.calls[i][-1] == f"cat > /workspaces/{BUILD_ERROR_MARKER}"
        assert "missing image/dockerFile/dockerComposeFile" in fake_cli.inputs[i]

        [fallback] = _ups(fake_cli)
        assert fallback[-2:] == ("--override-config", cfg.default_devcontainer_config_path)
        assert world.override_configs[0]["workspaceFolder"] == "/workspaces/repo"

    def test_volume_marker_failure_aborts(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        self._read_config(fake_cli, {"name": "Repo Config"})
        devcontainer_world(cfg)
        fake_cli.on("docker", "run", "--rm", "-i", returncode=1, output="no space left on device")

        with pytest.raises(FallbackAbortedError, match="aborting fallback"):
            ensure_devcontainer_ready(ctx, ContainerEngine(), cfg, volume=VOLUME)
        assert _ups(fake_cli) == []


class TestUserFromDefaultConfig:
    REPO_CONFIG = json.dumps({"outcome": "success", "mergedConfiguration": {"image": "node:20", "remoteUser": "node"}})

    @pytest.fixture
    def world(self, fake_cli, devcontainer_world, agent_config):
        def make(**kwargs):
            world = devcontainer_world(agent_config, **kwargs)
            fake_cli.on("devcontainer", "read-configuration", output=self.REPO_CONFIG)
            fake_cli.on("docker", "exec", "cid-1", "id", "-un", output="vscode\n")
            return world
        return make

    def test_fallback_ignores_repo_user(self, fake_cli, world, ctx, agent_config, repo_with_config):
        world(repo_rc=1)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), agent_config)

        assert result.used_fallback is True
        assert result.container_user == "vscode"
        assert fake_cli.find("devcontainer", "read-configuration") == []
        assert fake_cli.find("docker", "exec", "-u", "root", "cid-1", "id", "-u", "node") == []
        assert fake_cli.find("docker", "exec", "-u", "root", "cid-1", "chown") == [
            ("docker", "exec", "-u", "root", "cid-1", "chown", "-R", "1000:1000", "/workspaces/repo"),
        ]

    def test_fallback_uses_default_remote_user(self, fake_cli, world, ctx, agent_config, repo_with_config):
        cfg = replace(agent_config, default_devcontainer_remote_user="dev")
        world(repo_rc=1)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), cfg)

        assert result.container_user == "dev"
        assert fake_cli.find("docker", "inspect") == []
        assert fake_cli.find("docker", "exec", "-u", "root", "cid-1", "id", "-u", "dev")

    def test_reused_fallback_container_ignores_repo_user(self, fake_cli, world, ctx, agent_config, repo_with_config):
        build_error_marker_path(repo_with_config).write_text("fatal: repo image broken\n")
        world(running=True)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), agent_config)

        assert result.container_user == "vscode"
        assert fake_cli.find("devcontainer", "read-configuration") == []

    def test_reused_repo_container_reads_repo_user(self, fake_cli, world, ctx, agent_config, repo_with_config):
        world(running=True)
        result = ensure_devcontainer_ready(ctx, ContainerEngine(), agent_config)

        assert result.container_user == "node"
        assert fake_cli.find("devcontainer", "read-configuration")


class TestCustomContainerWorkDir:
    def test_volume_and_ownership_follow_configured_dir(self, fake_cli, devcontainer_world, ctx, cfg, repo_with_config):
        cfg = replace(cfg, container_work_dir="/workspaces/custom")
        payload = json.dumps({"outcome": "success", "mergedConfiguration": {"image": "node:20"}})
        fake_cli.on("devcontainer", "read-configuration", output=payload)
        world = devcontainer_world(cfg)
        ensure_devcontainer_ready(ctx, ContainerEngine(), cfg, volume=VOLUME)

        assert world.override_configs[0]["workspaceFolder"] == "/workspaces/custom"
        assert fake_cli.find("docker", "exec", "-u", "root", "cid-1", "chown") == [
            ("docker", "exec", "-u", "root", "cid-1", "chown", "-R", "1000:1000", "/workspaces/custom"),
        ]

    def test_default_config_uses_configured_dir(self, agent_config):
        cfg = replace(agent_config, container_work_dir="/workspaces/custom")
        assert default_config(cfg, VOLUME)["workspaceFolder"] == "/workspaces/custom"
