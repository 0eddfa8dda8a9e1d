"""Build and start the workspace devcontainer, falling back to a default image.

The repository's own configuration is always tried first.  When it fails,
the build output is persisted as the build-error marker *before* anything
else happens; only then are stale containers removed and the default
configuration built.  The marker is what later reports the workspace as
being in recovery.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from wsagent import runner
from wsagent.config import (
    DEFAULT_DEVCONTAINER_CONFIG_PATH,
    DEFAULT_DEVCONTAINER_IMAGE,
    AgentConfig,
)
from wsagent.container import ContainerEngine
from wsagent.context import CancelContext
from wsagent.devconfig import (
    DEVCONTAINER_CLI,
    DevcontainerConfig,
    has_devcontainer_config,
    read_merged_configuration,
)
from wsagent.errors import Cancelled, DevcontainerError, FallbackAbortedError
from wsagent.log import get_logger
from wsagent.users import ContainerUserResolver, reconcile_ownership
from wsagent.utils import atomic_write_bytes, atomic_write_text
from wsagent.volumes import VOLUME_MOUNT_TARGET, volume_mount_spec

logger = get_logger("devcontainer")

BUILD_ERROR_MARKER = ".devcontainer-build-error.log"
DEFAULT_CONFIG_NAME = "Default Workspace"
DEFAULT_FEATURES = (
    "ghcr.io/devcontainers/features/git:1",
    "ghcr.io/devcontainers/features/github-cli:1",
)


@dataclass
class BuildResult:
    container_id: str
    container_user: str
    used_fallback: bool


# ----------------------------------------------------------------------
# Build-error marker
# ----------------------------------------------------------------------

def build_error_marker_path(workspace_dir: str | Path) -> Path:
    return Path(workspace_dir) / BUILD_ERROR_MARKER


def build_error_marker_exists(workspace_dir: str | Path) -> bool:
    """True when the host marker exists.  Errors other than absence propagate."""
    try:
        build_error_marker_path(workspace_dir).stat()
    except FileNotFoundError:
        return False
    return True


def persist_build_diagnostics(
    ctx: CancelContext,
    engine: ContainerEngine,
    cfg: AgentConfig,
    output: str,
    volume: str = "",
) -> None:
    """Write the failed build's output to the host marker and the volume root.

    Any failure raises FallbackAbortedError; no fallback may start without
    this evidence on disk.
    """
    path = build_error_marker_path(cfg.workspace_dir)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_bytes(path, output.encode("utf-8"))
    except OSError as exc:
        raise FallbackAbortedError(
            f"failed to write devcontainer build error log to {path}; aborting fallback: {exc}"
        ) from exc
    logger.info("Wrote devcontainer build error log to %s", path)

    if not volume:
        return
    target = f"{VOLUME_MOUNT_TARGET}/{BUILD_ERROR_MARKER}"
    result = engine.run_helper(
        ctx, cfg.helper_image, f"cat > {target}",
        mounts=[f"{volume}:{VOLUME_MOUNT_TARGET}"], input=output,
    )
    if not result.ok:
        raise FallbackAbortedError(
            f"failed to write devcontainer build error log into volume {volume}; "
            f"aborting fallback: {result.text}"
        )


def clear_build_error_marker(
    ctx: CancelContext,
    engine: ContainerEngine,
    cfg: AgentConfig,
    volume: str = "",
) -> None:
    path = build_error_marker_path(cfg.workspace_dir)
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove devcontainer build error log %s: %s", path, exc)
    if not volume:
        return
    result = engine.run_helper(
        ctx, cfg.helper_image, f"rm -f {VOLUME_MOUNT_TARGET}/{BUILD_ERROR_MARKER}",
        mounts=[f"{volume}:{VOLUME_MOUNT_TARGET}"],
    )
    if not result.ok:
        logger.warning("Failed to remove build error log from volume %s: %s", volume, result.text)


# ----------------------------------------------------------------------
# Configuration files
# ----------------------------------------------------------------------

def default_config(cfg: AgentConfig, volume: str = "") -> DevcontainerConfig:
    doc = DevcontainerConfig({
        "name": DEFAULT_CONFIG_NAME,
        "image": cfg.default_devcontainer_image or DEFAULT_DEVCONTAINER_IMAGE,
        "features": {feature: {} for feature in DEFAULT_FEATURES},
    })
    if cfg.default_devcontainer_remote_user.strip():
        doc["remoteUser"] = cfg.default_devcontainer_remote_user.strip()
    if volume:
        doc.set_workspace_mount(volume_mount_spec(volume), cfg.container_work_dir)
    return doc


def write_default_config(cfg: AgentConfig, volume: str = "") -> Path:
    """Write the fallback devcontainer.json and return its path."""
    path = Path(cfg.default_devcontainer_config_path or DEFAULT_DEVCONTAINER_CONFIG_PATH)
    try:
        path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        atomic_write_text(path, default_config(cfg, volume).to_json())
    except OSError as exc:
        raise DevcontainerError(f"failed to write default devcontainer config {path}: {exc}") from exc
    return path


def write_mount_override_config(ctx: CancelContext, cfg: AgentConfig, volume: str) -> Path:
    """Write the repo's merged configuration, repointed at *volume*, to a temp file.

    ``up --mount`` can only add mounts, so the default bind mount is replaced
    through ``workspaceMount``/``workspaceFolder`` instead.  The caller removes
    the returned file.
    """
    merged = read_merged_configuration(ctx, cfg.workspace_dir)
    merged.set_workspace_mount(volume_mount_spec(volume), cfg.container_work_dir)
    if not merged.has_runtime_source():
        raise DevcontainerError(
            "merged devcontainer configuration is unusable: missing image/dockerFile/dockerComposeFile"
        )
    merged.normalize_lifecycle_hooks()

    fd, name = tempfile.mkstemp(prefix="devcontainer-override-", suffix=".json")
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(merged.to_json())
    return Path(name)


def devcontainer_up_args(
    workspace_dir: str,
    override_config: str | Path = "",
    additional_features: str = "",
) -> list[str]:
    args = ["up", "--workspace-folder", workspace_dir]
    if override_config:
        args += ["--override-config", str(override_config)]
    if additional_features:
        args += ["--additional-features", additional_features]
    return args


# ----------------------------------------------------------------------
# Builder
# ----------------------------------------------------------------------

class DevcontainerBuilder:
    """Bring the workspace devcontainer up and settle its user and ownership."""

    def __init__(self, engine: ContainerEngine, cfg: AgentConfig, *, volume: str = "") -> None:
        self.engine = engine
        self.cfg = cfg
        self.volume = volume

    def ensure_ready(self, ctx: CancelContext) -> BuildResult:
        cfg = self.cfg
        running = self.engine.list_ids(ctx, cfg.container_label_key, cfg.container_label_value)
        if len(running) == 1:
            logger.info(
                "Devcontainer already running for %s=%s",
                cfg.container_label_key, cfg.container_label_value,
            )
            return self._settle(
                ctx, running[0], used_fallback=False, from_default=self._running_from_default(),
            )
        if len(running) > 1:
            # find_container reports the ambiguity.
            self.engine.find_container(ctx, cfg.container_label_key, cfg.container_label_value)

        try:
            runner.wait_for_command(ctx, DEVCONTAINER_CLI)
        except Cancelled as exc:
            raise Cancelled(f"devcontainer CLI never became available: {exc}") from exc

        logger.info("Starting devcontainer for workspace at %s", cfg.workspace_dir)
        used_fallback = False
        repo_config = has_devcontainer_config(cfg.workspace_dir)
        if repo_config:
            failure = self._up_with_repo_config(ctx)
            if failure is None:
                clear_build_error_marker(ctx, self.engine, cfg, self.volume)
            else:
                self._fallback(ctx, failure)
                used_fallback = True
        else:
            logger.info("No devcontainer config in repository, using default config")
            self._up_with_default(ctx)

        container_id = self.engine.find_container(ctx, cfg.container_label_key, cfg.container_label_value)
        return self._settle(
            ctx, container_id, used_fallback=used_fallback,
            from_default=used_fallback or not repo_config,
        )

    def _running_from_default(self) -> bool:
        """Whether an already running container was built from the default config."""
        if not has_devcontainer_config(self.cfg.workspace_dir):
            return True
        try:
            return build_error_marker_exists(self.cfg.workspace_dir)
        except OSError as exc:
            logger.warning("Cannot check devcontainer build error log: %s", exc)
            return False

    def _settle(
        self,
        ctx: CancelContext,
        container_id: str,
        *,
        used_fallback: bool,
        from_default: bool,
    ) -> BuildResult:
        resolver = ContainerUserResolver(self.engine, self.cfg, default_config=from_default)
        user = resolver.resolve(ctx, container_id)
        reconcile_ownership(ctx, self.engine, container_id, user, self.cfg.container_work_dir)
        return BuildResult(container_id=container_id, container_user=user, used_fallback=used_fallback)

    def _up_with_repo_config(self, ctx: CancelContext) -> str | None:
        """Run ``up`` with the repository's config; return failure output or None."""
        cfg = self.cfg
        if cfg.additional_features:
            logger.info("Repo has its own devcontainer config, skipping additional-features injection")

        override: Path | None = None
        try:
            if self.volume:
                try:
                    override = write_mount_override_config(ctx, cfg, self.volume)
                except (DevcontainerError, OSError) as exc:
                    logger.warning("Cannot prepare volume override from repo config: %s", exc)
                    return str(exc)
            result = runner.run_command(
                ctx, DEVCONTAINER_CLI, devcontainer_up_args(cfg.workspace_dir, override or ""),
            )
        finally:
            if override is not None:
                override.unlink(missing_ok=True)

        if result.ok:
            return None
        logger.warning(
            "Devcontainer build failed with repo config (exit status %d), falling back to default image",
            result.returncode,
        )
        return result.output or f"devcontainer up exited with status {result.returncode}"

    def _up_with_default(self, ctx: CancelContext) -> None:
        cfg = self.cfg
        path = write_default_config(cfg, self.volume)
        logger.info("Using default devcontainer config: %s (image: %s)", path, cfg.default_devcontainer_image)
        if cfg.additional_features:
            logger.info("Injecting additional devcontainer features: %s", cfg.additional_features)
        result = runner.run_command(
            ctx,
            DEVCONTAINER_CLI,
            devcontainer_up_args(cfg.workspace_dir, path, cfg.additional_features),
        )
        if not result.ok:
            raise DevcontainerError(
                f"devcontainer up failed: exit status {result.returncode}: {result.text}"
            )

    def _fallback(self, ctx: CancelContext, failure: str) -> None:
        cfg = self.cfg
        persist_build_diagnostics(ctx, self.engine, cfg, failure, self.volume)
        self.engine.remove_stale(ctx, cfg.container_label_key, cfg.container_label_value)
        try:
            self._up_with_default(ctx)
        except DevcontainerError as exc:
            cause = failure.strip().splitlines()[-1] if failure.strip() else "unknown error"
            raise DevcontainerError(
                f"devcontainer fallback also failed: {exc} (original error: {cause})"
            ) from exc
        logger.info("Devcontainer fallback succeeded with default image")


def ensure_devcontainer_ready(
    ctx: CancelContext,
    engine: ContainerEngine,
    cfg: AgentConfig,
    *,
    volume: str = "",
) -> BuildResult:
    return DevcontainerBuilder(engine, cfg, volume=volume).ensure_ready(ctx)
