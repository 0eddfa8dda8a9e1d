"""The workspace bootstrap pipeline.

Both entry points run the same steps in the same order:

    volume -> clone -> devcontainer -> credential helper -> git identity
           -> environment -> ready

The boot flow additionally redeems the bootstrap token first and opens up
host permissions before the devcontainer build.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator

from wsagent.bootlog import COMPLETED, FAILED, STARTED, BootLogReporter
from wsagent.config import AgentConfig
from wsagent.container import ContainerEngine
from wsagent.context import CancelContext
from wsagent.credential_helper import ensure_git_credential_helper
from wsagent.credentials import ensure_bootstrap_state
from wsagent.devcontainer import BuildResult, ensure_devcontainer_ready
from wsagent.errors import Cancelled, ConfigError, StateError, WsAgentError
from wsagent.git import ensure_git_identity
from wsagent.log import get_logger
from wsagent.ready import STATUS_RECOVERY, mark_workspace_ready, marker_present, resolve_ready_status
from wsagent.repository import ensure_repository_ready, prime_workspace_permissions
from wsagent.shellenv import ensure_platform_env, ensure_project_runtime
from wsagent.state import BootstrapState, ProvisionState
from wsagent.volumes import ensure_volume_ready

logger = get_logger("orchestrator")


class _Phase:
    def __init__(self, completed: str) -> None:
        self.completed = completed


class Orchestrator:
    """Runs the bootstrap pipeline for one workspace.

    *reporter* may be None, in which case no boot-log events are sent.
    """

    def __init__(
        self,
        cfg: AgentConfig,
        *,
        reporter: BootLogReporter | None = None,
        engine: ContainerEngine | None = None,
    ) -> None:
        self.cfg = replace(cfg)
        self.reporter = reporter
        self.engine = engine or ContainerEngine(cfg.docker_cmd)

    def _report(self, step: str, status: str, message: str, detail: str = "") -> None:
        if self.reporter is not None:
            self.reporter.log(step, status, message, detail)

    @contextmanager
    def _phase(self, step: str, started: str, completed: str, failed: str) -> Iterator[_Phase]:
        self._report(step, STARTED, started)
        phase = _Phase(completed)
        try:
            yield phase
        except Exception as exc:
            self._report(step, FAILED, failed, str(exc))
            raise
        self._report(step, COMPLETED, phase.completed)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, ctx: CancelContext) -> str | None:
        """Whole-VM boot flow.  Returns the reported ready status.

        Returns None without doing anything when no bootstrap token is
        configured.
        """
        cfg = self.cfg
        if not cfg.bootstrap_token:
            logger.info("No bootstrap token configured, skipping workspace bootstrap")
            return None
        cfg.validate_for_boot()

        state = self._bootstrap_state(ctx)
        cfg.callback_token = state.callback_token
        if not cfg.callback_token:
            raise StateError("callback token is missing after bootstrap")

        return self._provision(ctx, state, prime_permissions=True)

    def prepare_workspace(self, ctx: CancelContext, provision: ProvisionState) -> bool:
        """Node-mode flow for an on-demand workspace.  Returns True in recovery."""
        cfg = self.cfg
        cfg.validate_for_boot()
        if not cfg.callback_token:
            raise ConfigError("CALLBACK_TOKEN is required to prepare a workspace")
        if self.reporter is not None:
            self.reporter.set_token(cfg.callback_token)

        state = provision.as_bootstrap_state(cfg.workspace_id, cfg.callback_token)
        status = self._provision(ctx, state, prime_permissions=False, provision=provision)
        return status == STATUS_RECOVERY

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _bootstrap_state(self, ctx: CancelContext) -> BootstrapState:
        redeeming = False

        def on_redeem() -> None:
            nonlocal redeeming
            redeeming = True
            self._report("bootstrap_redeem", STARTED, "Redeeming bootstrap credentials")

        try:
            state, redeemed = ensure_bootstrap_state(ctx, self.cfg, on_redeem=on_redeem)
        except Exception as exc:
            if redeeming:
                self._report("bootstrap_redeem", FAILED, "Bootstrap credential redemption failed", str(exc))
            raise
        if self.reporter is not None:
            self.reporter.set_token(state.callback_token)
        if redeemed:
            self._report("bootstrap_redeem", COMPLETED, "Bootstrap credentials redeemed")
        return state

    def _provision(
        self,
        ctx: CancelContext,
        state: BootstrapState,
        *,
        prime_permissions: bool,
        provision: ProvisionState | None = None,
    ) -> str:
        cfg = self.cfg

        volume = ""
        if cfg.container_mode and cfg.use_volume:
            with self._phase(
                "workspace_volume", "Creating workspace volume",
                "Workspace volume ready", "Workspace volume creation failed",
            ):
                volume = ensure_volume_ready(ctx, self.engine, cfg.workspace_id)

        with self._phase("git_clone", "Cloning repository", "Repository cloned", "Repository clone failed"):
            ensure_repository_ready(ctx, cfg, state, engine=self.engine, volume=volume)

        if prime_permissions:
            with self._phase(
                "workspace_perms_pre", "Preparing workspace permissions",
                "Workspace permissions prepared", "Pre-devcontainer permission setup failed",
            ):
                prime_workspace_permissions(ctx, cfg)

        had_marker = marker_present(cfg.workspace_dir)
        with self._phase(
            "devcontainer_up", "Building devcontainer", "Devcontainer ready", "Devcontainer build failed",
        ) as phase:
            build = ensure_devcontainer_ready(ctx, self.engine, cfg, volume=volume)
            if build.used_fallback:
                phase.completed = "Devcontainer ready (fallback to default image)"

        with self._phase(
            "git_creds", "Configuring git credentials",
            "Git credentials configured", "Git credential setup failed",
        ):
            ensure_git_credential_helper(ctx, self.engine, cfg)

        with self._phase(
            "git_identity", "Configuring git identity",
            "Git identity configured", "Git identity setup failed",
        ) as phase:
            if not ensure_git_identity(ctx, self.engine, cfg, state):
                phase.completed = "Git identity skipped (no email available)"

        with self._phase(
            "workspace_env", "Injecting workspace environment",
            "Workspace environment injected", "Workspace environment injection failed",
        ):
            self._inject_environment(ctx, build, state, provision)

        status = resolve_ready_status(build.used_fallback, had_marker, marker_present(cfg.workspace_dir))
        with self._phase(
            "workspace_ready", "Marking workspace ready",
            f"Workspace is ready ({status})", "Failed to mark workspace ready",
        ):
            mark_workspace_ready(ctx, cfg, status)
        return status

    def _inject_environment(
        self,
        ctx: CancelContext,
        build: BuildResult,
        state: BootstrapState,
        provision: ProvisionState | None,
    ) -> None:
        try:
            ensure_platform_env(ctx, self.engine, self.cfg, build.container_id, state.github_token)
        except Cancelled:
            raise
        except WsAgentError as exc:
            logger.warning("Failed to inject platform environment: %s", exc)

        if provision is not None:
            ensure_project_runtime(
                ctx, self.engine, self.cfg, build.container_id,
                provision.project_env_vars, provision.project_files,
                user=build.container_user,
            )
