"""Bootstrap token redemption with capped exponential backoff."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable

from wsagent import httpclient
from wsagent.config import AgentConfig
from wsagent.context import CancelContext
from wsagent.errors import RedemptionError, StateError, TransportError
from wsagent.log import get_logger
from wsagent.state import BootstrapState, load_state, save_state
from wsagent.utils import redact_secret

logger = get_logger("credentials")

INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 30.0
MIN_ATTEMPT_TIMEOUT = 1.0
_NON_RETRYABLE_STATUSES = {401, 403, 404}


def _is_retryable_status(status: int) -> bool:
    if status in _NON_RETRYABLE_STATUSES:
        return False
    return status >= 500 or status == 429


def redeem_bootstrap_token(
    ctx: CancelContext,
    cfg: AgentConfig,
    *,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> BootstrapState:
    """Exchange the one-time bootstrap token for long-lived credentials.

    Raises RedemptionError whose ``retryable`` flag tells the caller whether
    another attempt could succeed.
    """
    token = cfg.bootstrap_token
    url = f"{cfg.control_plane_url}/api/bootstrap/{token}"
    try:
        res = httpclient.request(ctx, "POST", url, timeout=timeout)
    except TransportError as exc:
        raise RedemptionError(redact_secret(str(exc), token), retryable=True) from exc

    if not res.ok:
        raise RedemptionError(
            f"bootstrap endpoint returned HTTP {res.status}: {redact_secret(res.text, token)}",
            retryable=_is_retryable_status(res.status),
        )

    try:
        payload = res.json()
    except ValueError as exc:
        raise RedemptionError(f"failed to decode bootstrap response: {exc}") from exc
    if not isinstance(payload, dict):
        raise RedemptionError("bootstrap response is not a JSON object")

    state = BootstrapState.from_json(payload)
    if not state.is_valid():
        raise RedemptionError("bootstrap response missing required fields")
    if state.workspace_id != cfg.workspace_id:
        raise RedemptionError(
            f"bootstrap workspace mismatch: expected {cfg.workspace_id}, got {state.workspace_id}"
        )
    return state


def redeem_with_retry(
    ctx: CancelContext,
    cfg: AgentConfig,
    *,
    sleep: Callable[[float], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> BootstrapState:
    """Redeem, retrying transient failures until ``bootstrap_max_wait`` elapses.

    Waits start at one second and double up to thirty, each clipped so the
    total never overshoots the deadline. Each attempt's request timeout is
    clipped to the deadline as well.
    """
    sleep = sleep or ctx.sleep
    deadline = clock() + cfg.bootstrap_max_wait
    backoff = INITIAL_BACKOFF

    while True:
        timeout = min(httpclient.DEFAULT_TIMEOUT, max(deadline - clock(), MIN_ATTEMPT_TIMEOUT))
        try:
            state = redeem_bootstrap_token(ctx, cfg, timeout=timeout)
        except RedemptionError as exc:
            if not exc.retryable:
                raise RedemptionError(f"bootstrap redemption failed (non-retryable): {exc}") from exc
            remaining = deadline - clock()
            if remaining <= 0:
                raise RedemptionError(
                    f"bootstrap redemption timed out after {cfg.bootstrap_max_wait:g}s: {exc}",
                    retryable=True,
                ) from exc
            wait = min(backoff, MAX_BACKOFF, remaining)
            logger.warning("Bootstrap redemption failed, retrying in %.1fs: %s", wait, exc)
            sleep(wait)
            backoff *= 2
            continue
        logger.info("Bootstrap token redeemed for workspace %s", cfg.workspace_id)
        return state


def ensure_bootstrap_state(
    ctx: CancelContext,
    cfg: AgentConfig,
    *,
    on_redeem: Callable[[], None] | None = None,
) -> tuple[BootstrapState, bool]:
    """Load the persisted state or redeem and persist a new one.

    Returns ``(state, redeemed)``. A persisted state for another workspace
    is fatal: it means the VM image carries stale credentials.
    """
    path = Path(cfg.bootstrap_state_path)
    state = load_state(path)
    if state is not None:
        if state.workspace_id != cfg.workspace_id:
            raise StateError(
                f"bootstrap state workspace mismatch: expected {cfg.workspace_id}, "
                f"found {state.workspace_id}"
            )
        logger.info("Using cached bootstrap state from %s", path)
        return state, False

    if on_redeem is not None:
        on_redeem()
    state = redeem_with_retry(ctx, cfg)
    save_state(path, state)
    return state, True
