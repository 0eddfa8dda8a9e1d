"""wsagent: turn a provisioned VM into a git-backed devcontainer workspace."""

__version__ = "0.4.0"
