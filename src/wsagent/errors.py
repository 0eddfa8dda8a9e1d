"""wsagent error hierarchy."""

from __future__ import annotations


class WsAgentError(Exception):
    """Base exception for all wsagent errors."""


class ConfigError(WsAgentError):
    """Configuration missing, malformed, or inconsistent."""


class Cancelled(WsAgentError):
    """The governing context was cancelled or its deadline passed."""


class CommandError(WsAgentError):
    """An external command failed or could not be started."""

    def __init__(
        self,
        message: str,
        *,
        argv: tuple[str, ...] = (),
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = argv
        self.returncode = returncode
        self.output = output


class TransportError(WsAgentError):
    """An HTTP request failed before a response was received."""


class RedemptionError(WsAgentError):
    """Bootstrap token redemption failed."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class StateError(WsAgentError):
    """Persisted bootstrap state is unusable for this workspace."""


class RepositoryError(WsAgentError):
    """Repository clone or volume mirroring failed."""


class ContainerError(WsAgentError):
    """Container engine operation failed or the container cannot be found."""


class DevcontainerError(WsAgentError):
    """Devcontainer build failed on every available path."""


class FallbackAbortedError(DevcontainerError):
    """Build diagnostics could not be persisted, so no fallback was attempted."""


class CredentialHelperError(WsAgentError):
    """The git credential helper could not be installed."""


class ProjectRuntimeError(WsAgentError):
    """Caller-supplied project variables or files are invalid or unwritable."""


class ReadyError(WsAgentError):
    """The control plane rejected the readiness report."""
